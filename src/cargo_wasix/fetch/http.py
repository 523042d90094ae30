"""HTTP retrieval with proxy, user-agent, and token handling."""

from __future__ import annotations

import json
import os
import shutil
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import OpenerDirector, ProxyHandler, Request, build_opener

from cargo_wasix import __version__
from cargo_wasix.errors import NetworkError

PROXY_ENV_VARS = ("http_proxy", "HTTP_PROXY", "https_proxy", "HTTPS_PROXY")
CONNECT_TIMEOUT = 10.0


def http_proxy(env: Mapping[str, str] | None = None) -> str | None:
    """Return the first configured proxy, in ``PROXY_ENV_VARS`` order."""
    env = os.environ if env is None else env
    for name in PROXY_ENV_VARS:
        value = env.get(name)
        if value:
            return value
    return None


def _opener() -> OpenerDirector:
    proxy = http_proxy()
    if proxy is None:
        return build_opener()
    return build_opener(ProxyHandler({"http": proxy, "https": proxy}))


def _request(url: str, *, token: str | None, accept: str | None) -> Request:
    headers = {"User-Agent": f"cargo-wasix/v{__version__}"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if accept:
        headers["Accept"] = accept
    return Request(url, headers=headers)


def get_json(url: str, *, token: str | None = None, timeout: float | None = None) -> Any:
    """GET *url* and decode the JSON body."""
    request = _request(url, token=token, accept="application/json")
    try:
        with _opener().open(request, timeout=timeout) as response:
            payload = response.read()
    except HTTPError as exc:
        raise NetworkError(
            f"Failed to get successful response from {url}: {exc.code} {exc.reason}",
            context={"operation": "http_get", "url": url},
        ) from exc
    except (URLError, OSError) as exc:
        raise NetworkError(
            f"Failed to fetch {url}",
            context={"operation": "http_get", "url": url, "error": str(exc)},
        ) from exc
    try:
        return json.loads(payload)
    except json.JSONDecodeError as exc:
        raise NetworkError(
            "Response body is not valid JSON.",
            context={"operation": "http_get", "url": url},
        ) from exc


def download(url: str, dest: str | Path, *, token: str | None = None) -> Path:
    """Stream *url* into *dest* and return the written path."""
    dest_path = Path(dest)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    request = _request(url, token=token, accept="application/octet-stream")
    try:
        with _opener().open(request, timeout=CONNECT_TIMEOUT) as response:
            with dest_path.open("wb") as out:
                shutil.copyfileobj(response, out)
    except HTTPError as exc:
        dest_path.unlink(missing_ok=True)
        raise NetworkError(
            f"Failed to get successful response from {url}: {exc.code} {exc.reason}",
            context={"operation": "download", "url": url},
        ) from exc
    except (URLError, OSError) as exc:
        dest_path.unlink(missing_ok=True)
        raise NetworkError(
            f"Failed to download {url}",
            context={"operation": "download", "url": url, "error": str(exc)},
        ) from exc
    return dest_path
