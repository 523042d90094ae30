"""Network retrieval: HTTP downloads, archive extraction, git checkouts."""

from .archive import fetch_and_extract, mark_executable
from .git import prepare_git_repo
from .http import download, get_json

__all__ = ["download", "fetch_and_extract", "get_json", "mark_executable", "prepare_git_repo"]
