"""
Vidify stream API.

Every server answers a POST with `{"snoopdog": "<binary tokens>"}`. The tokens
are XOR-ed bytes holding a password, salt and IV followed by an AES-256-CBC
payload; the decrypted JSON carries the stream URL under one of several keys.
Servers serving the same language are raced and the first usable URL wins.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import parse_qs, urlsplit

import anyio
import anyio.to_thread
import httpx
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger

from streamrelay.config import BROWSER_USER_AGENT, VIDIFY_KEY
from streamrelay.core.errors import NotFound, UpstreamTimeout
from streamrelay.domain.models import ContentKey, MediaType
from streamrelay.infrastructure.network import effective_proxy_url
from streamrelay.utils.logger import redact_url
from .api import ApiStream
from .config import ProviderConfig

PLAYER_ORIGIN = "https://player.vidify.top"
KDF_ITERATIONS = 100_000

_PROXY_WRAPPERS = ("proxify.vidify.top/proxy", "proxy-worker", "workers.dev/proxy")
_MP4_RE = re.compile(r"\.mp4(\?|$)", re.IGNORECASE)
# bare IP hosts serve broken certificates
_IP_HOST_RE = re.compile(r"^https?://\d{1,3}(\.\d{1,3}){3}")


@dataclass(frozen=True)
class VidifyServer:
    name: str
    sr: tuple[int, ...]
    language: str
    preferred: bool = False


VIDIFY_SERVERS: tuple[VidifyServer, ...] = (
    VidifyServer("Adam", (44,), "original Lang", preferred=True),
    VidifyServer("Alok", (44,), "original Lang"),
    VidifyServer("Alto", (44,), "original Lang"),
    VidifyServer("Box", (44,), "original Lang"),
    VidifyServer("Cypher", (44,), "original Lang"),
    VidifyServer("Haxo", (44,), "original Lang"),
    VidifyServer("Lux", (44,), "original Lang"),
    VidifyServer("Mbox", (44,), "original Lang"),
    VidifyServer("Meta", (44,), "original Lang"),
    VidifyServer("Nitro", (44,), "original Lang"),
    VidifyServer("Prime", (44,), "original Lang"),
    VidifyServer("Veasy", (44,), "original Lang"),
    VidifyServer("Vplus", (18,), "original Lang"),
    VidifyServer("Yoru", (44,), "original Lang"),
    VidifyServer("Test", (28,), "English Dub"),
    VidifyServer("Vfast", (11,), "English Dub"),
    VidifyServer("Gekko", (37,), "LATIN Dub"),
)


def servers_for(language: Optional[str]) -> list[VidifyServer]:
    """Servers for one language label (case-insensitive), preferred ones first."""
    wanted = (language or "original Lang").casefold()
    matching = [s for s in VIDIFY_SERVERS if s.language.casefold() == wanted]
    return sorted(matching, key=lambda s: not s.preferred)


def _strip_inner_padding(data: bytes) -> bytes:
    # some servers pad twice; JSON text never ends in a control byte
    if not data:
        return data
    n = data[-1]
    if 1 <= n <= 16 and len(data) >= n and data[-n:] == bytes([n]) * n:
        return data[:-n]
    return data


def decrypt_payload(snoopdog: str, key: str = VIDIFY_KEY) -> dict[str, Any]:
    """
    Decode a `snoopdog` envelope into its JSON object.

    Raises:
        ValueError: malformed tokens, bad padding or a non-object payload.
    """
    key_bytes = key.encode("latin-1")
    raw = bytes(
        int(token, 2) ^ key_bytes[i % len(key_bytes)]
        for i, token in enumerate(snoopdog.split())
    )
    if len(raw) <= 64:
        raise ValueError("envelope too short")
    password, salt, iv, body = raw[:32], raw[32:48], raw[48:64], raw[64:]

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    decryptor = Cipher(algorithms.AES(kdf.derive(password)), modes.CBC(iv)).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()
    unpadder = sym_padding.PKCS7(128).unpadder()
    plain = _strip_inner_padding(unpadder.update(padded) + unpadder.finalize())

    data = json.loads(plain.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError("payload is not a JSON object")
    return data


def _first_http(items: Any) -> Optional[dict]:
    if not isinstance(items, list):
        return None
    for item in items:
        if isinstance(item, dict) and isinstance(item.get("url"), str) and "http" in item["url"]:
            return item
    return None


def _unwrap_proxy(url: str) -> str:
    if not any(marker in url for marker in _PROXY_WRAPPERS):
        return url
    inner = parse_qs(urlsplit(url).query).get("url")
    return inner[0] if inner else url


def extract_stream_url(data: dict[str, Any]) -> Optional[str]:
    """
    Pick the stream URL out of a decrypted payload.

    Proxy wrappers are unwrapped to the URL they carry. MP4 files and bare-IP
    hosts are rejected (None).
    """
    url: Optional[str] = None
    for field in ("streaming_url", "stream_url", "video_url"):
        if isinstance(data.get(field), str) and data[field]:
            url = data[field]
            break
    else:
        if isinstance(data.get("url"), str) and "http" in data["url"]:
            url = data["url"]
        elif isinstance(data.get("sources"), list) and data["sources"]:
            source = _first_http(data["sources"])
            if source is not None:
                original = source.get("originalUrl")
                url = original if isinstance(original, str) and original else source["url"]
        elif isinstance(data.get("m3u8"), str) and data["m3u8"]:
            url = data["m3u8"]
        else:
            stream = _first_http(data.get("streams"))
            if stream is not None:
                url = stream["url"]

    if not url:
        return None
    url = _unwrap_proxy(url)
    if _MP4_RE.search(url) or _IP_HOST_RE.match(url):
        return None
    return url


def _build_async_client(timeout: float) -> httpx.AsyncClient:
    proxy = effective_proxy_url()
    if proxy:
        return httpx.AsyncClient(timeout=timeout, trust_env=False, proxy=proxy)
    return httpx.AsyncClient(timeout=timeout, trust_env=False)


def _request_body(key: ContentKey, sr: int) -> dict[str, Any]:
    body: dict[str, Any] = {"tmdb_id": key.id, "sr": sr, "type": key.media_type.value}
    if key.media_type is MediaType.TV and key.season is not None and key.episode is not None:
        body["season"] = key.season
        body["episode"] = key.episode
    return body


async def _fetch_server(
    client: httpx.AsyncClient, endpoint: str, server: VidifyServer, key: ContentKey, secret: str
) -> Optional[str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": BROWSER_USER_AGENT,
        "Origin": PLAYER_ORIGIN,
        "Referer": f"{PLAYER_ORIGIN}/",
    }
    for sr in server.sr:
        try:
            resp = await client.post(endpoint, json=_request_body(key, sr), headers=headers)
            if resp.status_code >= 400:
                logger.debug(f"Vidify {server.name} sr={sr}: HTTP {resp.status_code}")
                continue
            snoopdog = resp.json().get("snoopdog")
            if not isinstance(snoopdog, str) or not snoopdog:
                continue
            data = await anyio.to_thread.run_sync(decrypt_payload, snoopdog, secret)
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.debug(f"Vidify {server.name} sr={sr} failed: {exc}")
            continue
        url = extract_stream_url(data)
        if url:
            return url
        logger.debug(f"Vidify {server.name} sr={sr}: no usable URL in payload")
    return None


async def _race(
    client: httpx.AsyncClient,
    endpoint: str,
    servers: list[VidifyServer],
    key: ContentKey,
    secret: str,
) -> Optional[tuple[VidifyServer, str]]:
    winner: Optional[tuple[VidifyServer, str]] = None

    async with anyio.create_task_group() as tg:

        async def attempt(server: VidifyServer) -> None:
            nonlocal winner
            url = await _fetch_server(client, endpoint, server, key, secret)
            if url and winner is None:
                winner = (server, url)
                tg.cancel_scope.cancel()

        for server in servers:
            tg.start_soon(attempt, server)
    return winner


async def resolve_via_vidify(
    provider: ProviderConfig,
    key: ContentKey,
    *,
    timeout: float,
    secret: str = VIDIFY_KEY,
) -> ApiStream:
    """
    Resolve one content key through the Vidify servers for `provider.language`.

    Preferred servers are asked first on their own; the rest are raced.

    Raises:
        NotFound: no server produced a usable URL.
        UpstreamTimeout: nothing usable within `timeout` seconds.
    """
    endpoint = provider.target_url(key)
    servers = servers_for(provider.language)
    preferred = [s for s in servers if s.preferred]
    others = [s for s in servers if not s.preferred]

    result: Optional[tuple[VidifyServer, str]] = None
    try:
        with anyio.fail_after(timeout):
            async with _build_async_client(timeout) as client:
                for server in preferred:
                    url = await _fetch_server(client, endpoint, server, key, secret)
                    if url:
                        result = (server, url)
                        break
                if result is None and others:
                    result = await _race(client, endpoint, others, key, secret)
    except TimeoutError as exc:
        raise UpstreamTimeout(endpoint, timeout) from exc

    if result is None:
        raise NotFound(key.cache_key(), f"{provider.name}: no Vidify server answered")
    server, url = result
    logger.debug(
        f"Vidify {provider.name} resolved {key.cache_key()} via {server.name} -> {redact_url(url)}"
    )
    return ApiStream(url=url, language=server.language)
