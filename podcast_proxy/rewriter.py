"""Streaming URL rewriter for podcast feeds.

The rewriter walks the feed as a forward-only stream of expat events and
copies the original bytes through to the output. Only the attribute values
and ``<image><url>`` bodies matched by :data:`REWRITE_RULES` are replaced,
so vendor extensions, namespace prefixes, comments, processing
instructions, quoting and whitespace all survive untouched.
"""

import io
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Mapping, Optional
from urllib.parse import urlencode, urlsplit
from xml.parsers import expat
from xml.sax.saxutils import escape

import structlog

from podcast_proxy.core.errors import ProcessingError
from podcast_proxy.metrics import metrics

logger = structlog.get_logger(__name__)

XML_DECLARATION = b'<?xml version="1.0" encoding="UTF-8"?>\n'

UTF8_BOM = b"\xef\xbb\xbf"
UTF16_BOMS = (b"\xff\xfe", b"\xfe\xff")

# Separator expat puts between a namespace URI and a local name.
NAMESPACE_SEPARATOR = " "

AUDIO_EXTENSIONS = frozenset({".mp3", ".m4a", ".aac", ".wav", ".flac", ".ogg"})
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".svg"})

_TAG_NAME = re.compile(rb"<[^\s/>]+")
_ATTRIBUTE = re.compile(rb"(\s+)([^\s=]+)(\s*=\s*)([\"'])(.*?)\4", re.DOTALL)


class TargetKind(Enum):
    """What a proxied URL points at."""

    AUDIO = "audio"
    IMAGE = "image"


KIND_PATHS = {
    TargetKind.AUDIO: "proxy/audio",
    TargetKind.IMAGE: "proxy/image",
}


@dataclass(frozen=True)
class ProxyContext:
    """Per-request data needed to build proxied URLs.

    Attributes:
        scheme: Public scheme of this server (http or https)
        host: Public host (and port) of this server
        auth_token: Token appended to every proxied URL
        auth_param: Query parameter carrying the token
    """

    scheme: str
    host: str
    auth_token: str
    auth_param: str = "apikey"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}"


@dataclass(frozen=True)
class RewriteMatch:
    """Outcome of a matching rule: which attribute to rewrite, and as what."""

    attribute: str
    kind: TargetKind


def build_proxy_url(original: str, kind: TargetKind, context: ProxyContext) -> str:
    """Build the URL that routes ``original`` back through this server.

    Decoding the ``url`` query parameter of the result yields ``original``
    exactly, query string included.
    """
    query = urlencode({"url": original, context.auth_param: context.auth_token})
    return f"{context.base_url}/{KIND_PATHS[kind]}?{query}"


def classify_media(url: str, mime_type: Optional[str]) -> TargetKind:
    """Decide whether a media:content URL is audio or an image.

    The declared MIME type wins, then the file extension; anything still
    unknown is treated as audio.
    """
    mime = (mime_type or "").strip().lower()
    if mime.startswith("audio/"):
        return TargetKind.AUDIO
    if mime.startswith("image/"):
        return TargetKind.IMAGE

    path = urlsplit(url).path.lower()
    dot = path.rfind(".")
    extension = path[dot:] if dot > path.rfind("/") else ""
    if extension in AUDIO_EXTENSIONS:
        return TargetKind.AUDIO
    if extension in IMAGE_EXTENSIONS:
        return TargetKind.IMAGE
    return TargetKind.AUDIO


def _is_media_namespace(namespace: str) -> bool:
    return "media" in namespace or "mrss" in namespace


def enclosure_rule(local: str, namespace: str, attrs: Mapping[str, str]) -> Optional[RewriteMatch]:
    if local == "enclosure":
        return RewriteMatch("url", TargetKind.AUDIO)
    return None


def image_rule(local: str, namespace: str, attrs: Mapping[str, str]) -> Optional[RewriteMatch]:
    if local == "image" and (not namespace or "itunes" in namespace):
        return RewriteMatch("href", TargetKind.IMAGE)
    return None


def media_content_rule(
    local: str, namespace: str, attrs: Mapping[str, str]
) -> Optional[RewriteMatch]:
    if local == "content" and _is_media_namespace(namespace):
        return RewriteMatch("url", classify_media(attrs.get("url", ""), attrs.get("type")))
    return None


def media_thumbnail_rule(
    local: str, namespace: str, attrs: Mapping[str, str]
) -> Optional[RewriteMatch]:
    if local == "thumbnail" and _is_media_namespace(namespace):
        return RewriteMatch("url", TargetKind.IMAGE)
    return None


RewriteRule = Callable[[str, str, Mapping[str, str]], Optional[RewriteMatch]]

REWRITE_RULES: List[RewriteRule] = [
    enclosure_rule,
    image_rule,
    media_content_rule,
    media_thumbnail_rule,
]


def match_element(local: str, namespace: str, attrs: Mapping[str, str]) -> Optional[RewriteMatch]:
    """Return the first rule match for an element, if any."""
    for rule in REWRITE_RULES:
        match = rule(local, namespace, attrs)
        if match is not None:
            return match
    return None


def _split_name(name: str):
    namespace, _, local = name.rpartition(NAMESPACE_SEPARATOR)
    return namespace, local


@dataclass
class _PendingUrlBody:
    """An open ``<image><url>`` element whose text may be rewritten."""

    start: int
    parts: List[str]


class _RewriteSession:
    """State of one transform: the expat parser plus the output buffer.

    ``_buffer`` holds the input bytes from absolute offset ``_base`` on;
    ``_cursor`` is the absolute offset up to which input has been copied to
    the output. Edits are applied in document order, so everything before
    the current event is final unless an ``<image><url>`` body is pending.
    """

    def __init__(self, context: ProxyContext):
        self.context = context
        self.rewrites = 0
        self._buffer = bytearray()
        self._base = 0
        self._cursor = 0
        self._out = io.BytesIO()
        self._stack: List[str] = []
        self._pending: Optional[_PendingUrlBody] = None
        self._declaration_seen = False
        self._declaration_checked = False
        self._encoding_checked = False

        parser = expat.ParserCreate(namespace_separator=NAMESPACE_SEPARATOR)
        parser.XmlDeclHandler = self._on_declaration
        parser.StartElementHandler = self._on_start
        parser.EndElementHandler = self._on_end
        parser.CharacterDataHandler = self._on_text
        parser.EntityDeclHandler = self._on_entity_declaration
        self._parser = parser

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._buffer += chunk
        if not self._encoding_checked and len(self._buffer) >= 2:
            self._encoding_checked = True
            if self._base == 0 and self._buffer.startswith(UTF16_BOMS):
                raise ProcessingError("UTF-16 encoded feeds are not supported")
        self._parser.Parse(chunk, False)
        self._compact()

    def close(self) -> bytes:
        self._parser.Parse(b"", True)
        self._ensure_declaration()
        self._emit_until(self._base + len(self._buffer))
        return self._out.getvalue()

    # Output bookkeeping

    def _compact(self) -> None:
        consumed = self._cursor - self._base
        if consumed > 0:
            del self._buffer[:consumed]
            self._base = self._cursor

    def _emit_until(self, offset: int) -> None:
        if offset > self._cursor:
            self._out.write(self._buffer[self._cursor - self._base : offset - self._base])
            self._cursor = offset

    def _replace(self, start: int, end: int, replacement: bytes) -> None:
        self._emit_until(start)
        self._out.write(replacement)
        self._cursor = end
        self.rewrites += 1

    def _checkpoint(self) -> None:
        if self._pending is None:
            self._emit_until(self._parser.CurrentByteIndex)

    def _ensure_declaration(self) -> None:
        if self._declaration_checked:
            return
        self._declaration_checked = True
        if self._declaration_seen:
            return
        if self._buffer.startswith(UTF8_BOM):
            self._emit_until(len(UTF8_BOM))
        self._out.write(XML_DECLARATION)

    def _find_tag_end(self, start: int) -> int:
        """Absolute offset just past the ``>`` closing the tag at ``start``."""
        buf = self._buffer
        i = start - self._base
        quote = None
        while True:
            byte = buf[i]
            if quote is not None:
                if byte == quote:
                    quote = None
            elif byte in (0x22, 0x27):
                quote = byte
            elif byte == 0x3E:
                return self._base + i + 1
            i += 1

    # Expat handlers

    def _on_declaration(self, version, encoding, standalone) -> None:
        self._declaration_seen = True

    def _on_entity_declaration(self, name, *args) -> None:
        raise ProcessingError(f"Entity declarations are not allowed (entity '{name}')")

    def _on_start(self, name: str, attrs: Mapping[str, str]) -> None:
        self._ensure_declaration()
        namespace, local = _split_name(name)
        start = self._parser.CurrentByteIndex

        if self._pending is not None:
            # <url> with child elements is not a plain text URL
            self._pending = None
        self._checkpoint()

        parent = self._stack[-1] if self._stack else None
        self._stack.append(local)

        match = match_element(local, namespace, attrs)
        if match is not None:
            value = attrs.get(match.attribute, "").strip()
            if value:
                end = self._find_tag_end(start)
                tag = bytes(self._buffer[start - self._base : end - self._base])
                proxied = build_proxy_url(value, match.kind, self.context)
                rewritten = _replace_attribute(tag, match.attribute, proxied)
                if rewritten is not None:
                    self._replace(start, end, rewritten)
            return

        if local == "url" and parent == "image":
            end = self._find_tag_end(start)
            if not self._buffer[: end - self._base].endswith(b"/>"):
                self._pending = _PendingUrlBody(start=end, parts=[])

    def _on_end(self, name: str) -> None:
        _, local = _split_name(name)
        if self._stack:
            self._stack.pop()

        pending = self._pending
        if pending is not None and local == "url":
            self._pending = None
            text = "".join(pending.parts).strip()
            if text:
                proxied = build_proxy_url(text, TargetKind.IMAGE, self.context)
                end = self._parser.CurrentByteIndex
                self._replace(pending.start, end, _escape_text(proxied))
        self._checkpoint()

    def _on_text(self, data: str) -> None:
        if self._pending is not None:
            self._pending.parts.append(data)
        else:
            self._checkpoint()


def _escape_text(value: str) -> bytes:
    return escape(value).encode("ascii", "xmlcharrefreplace")


def _escape_attribute(value: str, quote: bytes) -> bytes:
    entities = {'"': "&quot;"} if quote == b'"' else {"'": "&apos;"}
    return escape(value, entities).encode("ascii", "xmlcharrefreplace")


def _replace_attribute(tag: bytes, attribute: str, value: str) -> Optional[bytes]:
    """Swap the value of an unprefixed attribute inside a raw start tag.

    Attributes are scanned one after another from the tag name on, so an
    ``url=`` that appears inside another attribute's value is never hit.
    """
    name = attribute.encode("ascii")
    head = _TAG_NAME.match(tag)
    if head is None:
        return None
    for match in _ATTRIBUTE.finditer(tag, head.end()):
        if match.group(2) == name:
            quote = match.group(4)
            start, end = match.span(5)
            return tag[:start] + _escape_attribute(value, quote) + tag[end:]
    return None


class URLRewriter:
    """Rewrites media and image URLs of a feed to go through this proxy.

    A transform either returns the complete rewritten document or raises
    :class:`ProcessingError`; partial output never escapes.
    """

    def __init__(self, context: ProxyContext, chunk_size: int = 64 * 1024):
        """Initialize the rewriter.

        Args:
            context: Public address and token used in proxied URLs
            chunk_size: Bytes handed to the parser at a time by :meth:`transform`
        """
        self.context = context
        self.chunk_size = chunk_size
        self.rewrite_duration = metrics.register_histogram(
            "feed_rewrite_duration_seconds", "Duration of feed rewrites"
        )
        self.rewrite_counter = metrics.register_counter(
            "feed_rewrites_total", "Total number of feed rewrites", ["status"]
        )

    def transform(self, document: bytes) -> bytes:
        """Rewrite a complete document held in memory."""
        chunks = (
            document[i : i + self.chunk_size] for i in range(0, len(document), self.chunk_size)
        )
        return self.transform_chunks(chunks)

    def transform_chunks(self, chunks: Iterable[bytes]) -> bytes:
        """Rewrite a document supplied as a sequence of byte chunks.

        Raises:
            ProcessingError: If the document is not well-formed XML
        """
        start_time = time.time()
        session = _RewriteSession(self.context)
        try:
            for chunk in chunks:
                session.feed(chunk)
            output = session.close()
        except expat.ExpatError as e:
            self.rewrite_counter.labels(status="failed").inc()
            logger.warning("feed_rewrite_failed", error=str(e))
            raise ProcessingError(
                f"Failed to parse feed XML: {e}",
                details={"line": e.lineno, "column": e.offset},
            )
        except (ValueError, LookupError) as e:
            # pyexpat rejects multi-byte and unknown declared encodings this way
            self.rewrite_counter.labels(status="failed").inc()
            logger.warning("feed_rewrite_failed", error=str(e))
            raise ProcessingError(f"Unsupported feed encoding: {e}")
        except ProcessingError as e:
            self.rewrite_counter.labels(status="failed").inc()
            logger.warning("feed_rewrite_failed", error=e.message)
            raise

        self.rewrite_duration.observe(time.time() - start_time)
        self.rewrite_counter.labels(status="success").inc()
        logger.debug("feed_rewritten", rewrites=session.rewrites, size=len(output))
        return output
