from __future__ import annotations

import json
import os
import ssl
from functools import lru_cache
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import certifi


def _resolve_ca_bundle() -> tuple[str | None, str | None]:
    env_cafile = os.getenv("SSL_CERT_FILE")
    if env_cafile:
        return env_cafile, None

    env_capath = os.getenv("SSL_CERT_DIR")
    if env_capath:
        return None, env_capath

    return certifi.where(), None


@lru_cache(maxsize=1)
def _ssl_context() -> ssl.SSLContext:
    cafile, capath = _resolve_ca_bundle()
    if cafile:
        return ssl.create_default_context(cafile=cafile)
    if capath:
        return ssl.create_default_context(capath=capath)
    return ssl.create_default_context()


def build_url(url: str, params: dict[str, str] | None = None) -> str:
    if not params:
        return url
    query = urlencode(params)
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{query}"


def get_json(url: str, params: dict[str, str] | None = None, timeout: float = 10.0):
    request = Request(build_url(url, params), headers={"User-Agent": "copytrade-bot/0.1"})
    with urlopen(request, timeout=timeout, context=_ssl_context()) as response:
        body = response.read().decode("utf-8")
    return json.loads(body)
