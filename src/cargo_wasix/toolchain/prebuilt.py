"""Download and install a pre-built toolchain from GitHub releases."""

from __future__ import annotations

import os
import platform
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

from cargo_wasix.cache import Cache
from cargo_wasix.config import Config, ensure_network_allowed
from cargo_wasix.errors import NetworkError
from cargo_wasix.fetch.archive import Downloader, fetch_and_extract, mark_executable
from cargo_wasix.fetch.http import download, get_json
from cargo_wasix.models import rustc_exe
from cargo_wasix.observability import StructuredLogger

RUST_REPO = "https://github.com/wasix-org/rust.git"
SYSROOT_ASSET = "wasix-libc.tar.gz"

JsonFetcher = Callable[..., Any]

_PREBUILT_HOSTS: dict[tuple[str, str], str] = {
    ("Linux", "x86_64"): "x86_64-unknown-linux-gnu",
    ("Darwin", "x86_64"): "x86_64-apple-darwin",
    ("Darwin", "arm64"): "aarch64-apple-darwin",
    ("Windows", "AMD64"): "x86_64-pc-windows-msvc",
}

# The sysroot archive may or may not wrap its content in a `wasix-libc/` dir.
SYSROOT_MEMBERS: Mapping[str, str] = {
    "wasix-libc/sysroot32": "sysroot32",
    "wasix-libc/sysroot64": "sysroot64",
    "sysroot32": "sysroot32",
    "sysroot64": "sysroot64",
}


def guess_host_target(system: str | None = None, machine: str | None = None) -> str | None:
    """Return the host triple if a pre-built toolchain exists for it."""
    key = (system or platform.system(), machine or platform.machine())
    return _PREBUILT_HOSTS.get(key)


def release_api_url(repo: str = RUST_REPO) -> str:
    slug = repo.removeprefix("https://github.com/").removesuffix(".git")
    return f"https://api.github.com/repos/{slug}/releases/latest"


def github_token(env: Mapping[str, str] | None = None) -> str | None:
    env = os.environ if env is None else env
    token = env.get("GITHUB_TOKEN", "").strip()
    return token or None


@dataclass(frozen=True, slots=True)
class ReleaseAssets:
    tag: str
    rust_url: str
    sysroot_url: str


def resolve_release(
    host: str,
    *,
    token: str | None = None,
    fetch_json: JsonFetcher = get_json,
) -> ReleaseAssets:
    """Pick the compiler and sysroot assets of the latest release for *host*."""
    url = release_api_url()
    release = fetch_json(url, token=token)
    if not isinstance(release, dict):
        raise NetworkError("Could not deserialize release info.", context={"url": url})
    tag = str(release.get("tag_name", ""))
    assets: dict[str, str] = {}
    for asset in release.get("assets") or []:
        if isinstance(asset, dict) and "name" in asset and "browser_download_url" in asset:
            assets[str(asset["name"])] = str(asset["browser_download_url"])

    rust_asset = f"rust-toolchain-{host}.tar.gz"
    if rust_asset not in assets:
        raise NetworkError(
            f"Release {tag} does not have a prebuilt toolchain for host {host}.",
            context={"url": url, "asset": rust_asset},
        )
    if SYSROOT_ASSET not in assets:
        raise NetworkError(
            f"Release {tag} does not have the sysroot asset.",
            context={"url": url, "asset": SYSROOT_ASSET},
        )
    return ReleaseAssets(tag=tag, rust_url=assets[rust_asset], sysroot_url=assets[SYSROOT_ASSET])


def install_prebuilt(
    host: str,
    *,
    cache: Cache,
    config: Config,
    logger: StructuredLogger,
    fetch_json: JsonFetcher = get_json,
    downloader: Downloader | None = None,
) -> Path:
    """Install the latest pre-built toolchain and return its compiler directory."""
    ensure_network_allowed(config=config, operation="install_prebuilt")
    token = github_token()
    logger.info(f"Finding latest release... ({release_api_url()})", operation="toolchain")
    assets = resolve_release(host, token=token, fetch_json=fetch_json)
    fetch = downloader if downloader is not None else partial(download, token=token)

    toolchain_dir = cache.toolchains_dir / f"{host}_{assets.tag}"
    fetch_and_extract(
        assets.sysroot_url,
        toolchain_dir,
        members=SYSROOT_MEMBERS,
        expected=("sysroot32", "sysroot64"),
        lock_path=cache.lock_path(f"{toolchain_dir.name}-sysroot"),
        config=config,
        downloader=fetch,
        logger=logger,
    )

    rust_dir = toolchain_dir / "rust"
    fetch_and_extract(
        assets.rust_url,
        rust_dir,
        members={"": "."},
        expected=(f"bin/{rustc_exe()}", f"lib/rustlib/{host}"),
        lock_path=cache.lock_path(f"{toolchain_dir.name}-rust"),
        config=config,
        downloader=fetch,
        logger=logger,
    )
    for bin_dir in [rust_dir / "bin", *sorted(rust_dir.glob("lib/rustlib/*/bin"))]:
        mark_executable(bin_dir)

    logger.info(f"Downloaded toolchain {host} to {rust_dir}", operation="toolchain")
    return rust_dir
