"""
Format Handlers

One handler per retrieval strategy. A handler downloads a source through
the shared FeedClient, decodes it (gzip, zip, vendor JSON, XML) and
stages the result under the feeds directory for the parsers.

run() is the handler boundary: nothing raised while retrieving a source
escapes it, every error becomes a failed FetchResult.
"""

import gzip
import io
import json
import logging
import time
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type, Union

from defusedxml import ElementTree
from defusedxml.common import DefusedXmlException

from ioc_ingest.core.config import PhishStatsConfig
from ioc_ingest.core.errors import PayloadError
from ioc_ingest.core.models import (
    FetchResult,
    FetchStatus,
    HandlerType,
    SourceDescriptor,
    utcnow,
)
from ioc_ingest.feeds.extract import extract_iocs_from_text
from ioc_ingest.feeds.http import FeedClient

logger = logging.getLogger(__name__)

OTX_MAX_PULSES = 100
PHISHSTATS_PAGE_DELAY_SECONDS = 1.0


def _line_count(content: str) -> int:
    return len(content.split("\n"))


class FormatHandler(ABC):
    """Base class for retrieval strategies."""

    handler_type: HandlerType

    def __init__(
        self,
        client: FeedClient,
        feeds_path: Union[str, Path],
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize handler.

        Args:
            client: HTTP client with the feed retry policy
            feeds_path: Staging directory
            sleep: Sleep function (used for in-handler rate limiting)
        """
        self.client = client
        self.feeds_path = Path(feeds_path)
        self.sleep = sleep

    def run(self, source: SourceDescriptor) -> FetchResult:
        """
        Retrieve and stage one source.

        Args:
            source: Source to fetch

        Returns:
            FetchResult with status success or failed
        """
        logger.info(f"[{source.name}] Starting fetch...")
        try:
            count = self.retrieve(source)
        except Exception as e:
            logger.error(f"[{source.name}] Failed: {e}")
            return FetchResult(
                source=source.key,
                status=FetchStatus.FAILED,
                error=str(e),
                timestamp=utcnow(),
            )

        logger.info(f"[{source.name}] Success ({count} items)")
        return FetchResult(
            source=source.key,
            status=FetchStatus.SUCCESS,
            count=count,
            timestamp=utcnow(),
        )

    @abstractmethod
    def retrieve(self, source: SourceDescriptor) -> int:
        """Download and stage the source, returning the item count."""
        pass

    def _stage(self, name: str, content: Union[str, Any], extension: str) -> Path:
        """Write a payload to <feeds_path>/<name>.<extension>."""
        self.feeds_path.mkdir(parents=True, exist_ok=True)
        path = self.feeds_path / f"{name}.{extension}"
        if not isinstance(content, str):
            content = json.dumps(content, indent=2)
        path.write_text(content, encoding="utf-8")
        logger.info(f"[Staging] Saved: {path.name}")
        return path

    def _get_text(self, source: SourceDescriptor, **kwargs) -> str:
        response = self.client.get(source.url, headers=source.headers, **kwargs)
        return response.content.decode("utf-8", errors="replace")

    @staticmethod
    def _load_json(text: str, source: SourceDescriptor) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise PayloadError(f"{source.name} returned invalid JSON: {e}") from e


class PlainHandler(FormatHandler):
    """Single GET, staged as-is."""

    handler_type = HandlerType.PLAIN

    def retrieve(self, source: SourceDescriptor) -> int:
        content = self._get_text(source)
        self._stage(source.filename, content, source.type.value)
        return _line_count(content)


class GzipHandler(FormatHandler):
    """Gzip-compressed payload."""

    handler_type = HandlerType.GZIP

    def retrieve(self, source: SourceDescriptor) -> int:
        response = self.client.get(source.url, headers=source.headers)
        try:
            raw = gzip.decompress(response.content)
        except (OSError, EOFError) as e:
            raise PayloadError(f"Invalid gzip payload: {e}") from e
        content = raw.decode("utf-8", errors="replace")
        self._stage(source.filename, content, source.type.value)
        return _line_count(content)


class ZipHandler(FormatHandler):
    """Zip archive; the first entry is staged."""

    handler_type = HandlerType.ZIP

    def retrieve(self, source: SourceDescriptor) -> int:
        response = self.client.get(source.url, headers=source.headers)
        try:
            archive = zipfile.ZipFile(io.BytesIO(response.content))
        except zipfile.BadZipFile as e:
            raise PayloadError(f"Invalid ZIP archive: {e}") from e

        with archive:
            names = archive.namelist()
            if not names:
                raise PayloadError("Empty ZIP archive")
            content = archive.read(names[0]).decode("utf-8", errors="replace")

        self._stage(source.filename, content, source.type.value)
        return _line_count(content)


class OtxApiHandler(FormatHandler):
    """AlienVault OTX pulses; each pulse is staged as its own JSON file."""

    handler_type = HandlerType.OTX_API

    def retrieve(self, source: SourceDescriptor) -> int:
        if not source.api_key:
            raise PayloadError("OTX_API_KEY not configured")

        text = self._get_text_with_key(source)
        data = self._load_json(text, source)
        pulses = data.get("results", []) if isinstance(data, dict) else []

        for pulse in pulses[:OTX_MAX_PULSES]:
            pulse_id = pulse.get("id") or "unknown"
            self._stage(f"{source.filename}_{pulse_id}", pulse, "json")

        return len(pulses)

    def _get_text_with_key(self, source: SourceDescriptor) -> str:
        headers = {**source.headers, "X-OTX-API-KEY": source.api_key}
        response = self.client.get(source.url, headers=headers)
        return response.content.decode("utf-8", errors="replace")


class MalshareApiHandler(FormatHandler):
    """MalShare getlist; JSON when the API returns it, raw text otherwise."""

    handler_type = HandlerType.MALSHARE_API

    def retrieve(self, source: SourceDescriptor) -> int:
        if not source.api_key:
            raise PayloadError("MALSHARE_API_KEY not configured")

        content = self._get_text(
            source,
            params={"api_key": source.api_key, "action": "getlist"}
        )

        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            self._stage(source.filename, content, source.type.value)
            return _line_count(content)

        self._stage(source.filename, data, "json")
        if isinstance(data, (list, dict)):
            return len(data)
        return 1


class PhishStatsHandler(FormatHandler):
    """Paged PhishStats API, deduplicated by entry id across pages."""

    handler_type = HandlerType.PHISHSTATS_API

    def __init__(
        self,
        client: FeedClient,
        feeds_path: Union[str, Path],
        sleep: Callable[[float], None] = time.sleep,
        paging: Optional[PhishStatsConfig] = None
    ):
        super().__init__(client, feeds_path, sleep)
        self.paging = paging or PhishStatsConfig()

    def retrieve(self, source: SourceDescriptor) -> int:
        seen = set()
        total = 0
        pages = self.paging.pages

        for page in range(1, pages + 1):
            if page > 1:
                self.sleep(PHISHSTATS_PAGE_DELAY_SECONDS)

            logger.info(f"[{source.name}] Fetching page {page}/{pages}")
            text = self._get_text(
                source,
                params={"_page": page, "_perPage": self.paging.limit}
            )
            data = self._load_json(text, source)
            if not isinstance(data, list):
                raise PayloadError(f"{source.name} page {page} is not a JSON list")

            new_entries = []
            for entry in data:
                entry_id = self._entry_id(entry)
                if entry_id in seen:
                    continue
                seen.add(entry_id)
                new_entries.append(entry)

            if new_entries:
                self._stage(f"{source.filename}_page{page}", new_entries, "json")
                total += len(new_entries)

        return total

    @staticmethod
    def _entry_id(entry: Any) -> str:
        if isinstance(entry, dict) and entry.get("id") is not None:
            return f"id:{entry['id']}"
        return json.dumps(entry, sort_keys=True, default=str)


class XmlExtractHandler(FormatHandler):
    """
    Extract indicators from XML (or plain text) documents.

    XML bodies are parsed with defusedxml and every text node, tail and
    attribute value is scanned; anything else is scanned as raw text.
    """

    handler_type = HandlerType.XML_EXTRACT

    def retrieve(self, source: SourceDescriptor) -> int:
        response = self.client.get(source.url, headers=source.headers)
        body = response.content
        text = body.decode("utf-8", errors="replace")

        if "<?xml" in text:
            try:
                root = ElementTree.fromstring(body)
            except (ElementTree.ParseError, DefusedXmlException) as e:
                raise PayloadError(f"Invalid XML payload: {e}") from e

            iocs = extract_iocs_from_text("\n".join(self._collect_text(root)))
            if not iocs:
                logger.warning(f"[{source.name}] No IOCs found in XML")
                return 0
        else:
            iocs = extract_iocs_from_text(text)

        self._stage(source.filename, "\n".join(iocs), source.type.value)
        return len(iocs)

    @staticmethod
    def _collect_text(root) -> List[str]:
        texts = []
        for element in root.iter():
            texts.extend(v for v in element.attrib.values() if v)
            if element.text and element.text.strip():
                texts.append(element.text.strip())
            if element.tail and element.tail.strip():
                texts.append(element.tail.strip())
        return texts


HANDLERS: Dict[HandlerType, Type[FormatHandler]] = {
    cls.handler_type: cls
    for cls in (
        PlainHandler,
        GzipHandler,
        ZipHandler,
        OtxApiHandler,
        MalshareApiHandler,
        PhishStatsHandler,
        XmlExtractHandler,
    )
}


def handler_for(
    source: SourceDescriptor,
    client: FeedClient,
    feeds_path: Union[str, Path],
    sleep: Callable[[float], None] = time.sleep,
    paging: Optional[PhishStatsConfig] = None
) -> FormatHandler:
    """Instantiate the handler selected by the source's handler field."""
    cls = HANDLERS[source.handler]
    if cls is PhishStatsHandler:
        return PhishStatsHandler(client, feeds_path, sleep, paging=paging)
    return cls(client, feeds_path, sleep)


def build_handlers(
    catalog: List[SourceDescriptor],
    client: FeedClient,
    feeds_path: Union[str, Path],
    sleep: Callable[[float], None] = time.sleep,
    paging: Optional[PhishStatsConfig] = None
) -> Dict[str, FormatHandler]:
    """Map each catalog key to its handler instance."""
    return {
        source.key: handler_for(source, client, feeds_path, sleep, paging)
        for source in catalog
    }
