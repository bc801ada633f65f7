"""
Link Preview Service

Fetches Open Graph / HTML metadata for the first URL in a message and stores
it under ``metadata.link_preview``. Runs in the background after the message
is stored; failures are logged and never reach the poster.
"""

import asyncio
import ipaddress
import logging
import re
import socket
from typing import Awaitable, Callable, List, Optional, Set
from urllib.parse import urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from app.core.config import settings
from app.crud import crud_chat
from app.schemas.chat import LinkPreview

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
MAX_REDIRECTS = 2

Resolver = Callable[[str], Awaitable[List[str]]]

# Strong references so scheduled tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def extract_first_url(content: Optional[str]) -> Optional[str]:
    if not content:
        return None
    match = URL_PATTERN.search(content)
    if not match:
        return None
    return match.group(0).rstrip(".,;:!?)]}")


def is_private_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


async def resolve_host(hostname: str) -> List[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return list({info[4][0] for info in infos})


async def is_public_url(url: str, resolver: Resolver = resolve_host) -> bool:
    """http(s) only, and the host must not be or resolve to a private address."""
    if len(url) > settings.LINK_PREVIEW_MAX_URL_LENGTH:
        return False
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    hostname = parsed.hostname.lower()
    try:
        ipaddress.ip_address(hostname)
        return not is_private_address(hostname)
    except ValueError:
        pass
    try:
        addresses = await resolver(hostname)
    except (OSError, socket.gaierror) as e:
        logger.warning(f"[LinkPreview] Could not resolve {hostname}: {e}")
        return False
    if not addresses:
        return False
    return not any(is_private_address(address) for address in addresses)


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    if not value:
        return None
    value = " ".join(value.split())
    if len(value) > limit:
        value = value[: limit - 3].rstrip() + "..."
    return value or None


def _meta_content(soup: BeautifulSoup, *names: str) -> Optional[str]:
    for name in names:
        tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
        if tag and tag.get("content"):
            return tag["content"]
    return None


def parse_link_preview(url: str, html: str) -> LinkPreview:
    soup = BeautifulSoup(html, "html.parser")

    title = _meta_content(soup, "og:title", "twitter:title")
    if not title and soup.title and soup.title.string:
        title = soup.title.string
    description = _meta_content(soup, "og:description", "twitter:description", "description")
    image = _meta_content(soup, "og:image", "twitter:image")
    if image:
        image = urljoin(url, image)
        if urlparse(image).scheme not in ("http", "https"):
            image = None

    return LinkPreview(
        url=url,
        title=_truncate(title, settings.LINK_PREVIEW_MAX_TITLE_LENGTH),
        description=_truncate(description, settings.LINK_PREVIEW_MAX_DESCRIPTION_LENGTH),
        image=image,
    )


async def fetch_link_preview(
    url: str,
    client: Optional[httpx.AsyncClient] = None,
    resolver: Resolver = resolve_host,
) -> Optional[LinkPreview]:
    """Fetch and parse ``url``. Returns None for unsafe URLs or non-HTML responses."""
    if not await is_public_url(url, resolver):
        logger.info(f"[LinkPreview] Skipping non-public URL: {url[:100]}")
        return None

    headers = {"User-Agent": settings.LINK_PREVIEW_USER_AGENT, "Accept": "text/html,application/xhtml+xml"}
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(
            timeout=settings.LINK_PREVIEW_TIMEOUT_SECONDS,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
        )
    try:
        async with client.stream("GET", url, headers=headers) as response:
            response.raise_for_status()
            if "html" not in response.headers.get("content-type", "").lower():
                return None
            # Redirects may land somewhere else
            if str(response.url) != url and not await is_public_url(str(response.url), resolver):
                return None
            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) >= settings.LINK_PREVIEW_MAX_HTML_BYTES:
                    del body[settings.LINK_PREVIEW_MAX_HTML_BYTES:]
                    break
            encoding = response.encoding or "utf-8"
        html = bytes(body).decode(encoding, errors="replace")
        return parse_link_preview(str(response.url), html)
    finally:
        if owns_client:
            await client.aclose()


async def enrich_message_with_preview(
    message_id: int,
    content: str,
    session_factory,
    on_updated: Optional[Callable] = None,
    client: Optional[httpx.AsyncClient] = None,
    resolver: Resolver = resolve_host,
):
    """
    Fetch a preview for the first URL in ``content`` and merge it into the
    message's metadata. ``on_updated(message)`` is awaited after the commit.
    """
    url = extract_first_url(content)
    if not url:
        return None
    try:
        preview = await fetch_link_preview(url, client=client, resolver=resolver)
        if preview is None:
            return None
        db = session_factory()
        try:
            message = crud_chat.merge_message_metadata(db, message_id, {"link_preview": preview.model_dump()})
            if message is None:
                logger.info(f"[LinkPreview] Message {message_id} is gone, dropping preview")
                return None
            logger.info(f"[LinkPreview] Attached preview for {url[:100]} to message {message_id}")
            if on_updated is not None:
                await on_updated(message)
            return message
        finally:
            db.close()
    except httpx.HTTPError as e:
        logger.warning(f"[LinkPreview] Fetch failed for {url[:100]}: {e}")
    except Exception as e:
        logger.error(f"[LinkPreview] Unexpected error enriching message {message_id}: {e}")
    return None


def schedule_link_preview(message_id: int, content: str, session_factory, on_updated: Optional[Callable] = None) -> Optional[asyncio.Task]:
    """Fire-and-forget enrichment; returns the task, or None if there is nothing to fetch."""
    if not settings.LINK_PREVIEW_ENABLED or not extract_first_url(content):
        return None
    task = asyncio.get_running_loop().create_task(
        enrich_message_with_preview(message_id, content, session_factory, on_updated)
    )
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
