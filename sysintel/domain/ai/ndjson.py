from typing import Any, Iterable, List, Optional
import codecs
import json
import structlog

logger = structlog.get_logger(__name__)


class NDJSONDecoder:
    """
    Incremental newline-delimited JSON decoder

    Bytes may be split anywhere, including inside a multi-byte character.
    Each complete line is parsed on its own; malformed lines are skipped.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[Any]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        complete, _, self._buffer = self._buffer.rpartition("\n")
        return self._parse_lines(complete.split("\n"))

    def close(self) -> List[Any]:
        """Parse whatever is left once the stream ends"""

        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return self._parse_lines([rest])

    def _parse_lines(self, lines: Iterable[str]) -> List[Any]:
        items = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                items.append(json.loads(line))
            except json.JSONDecodeError as e:
                logger.warning("Skipping malformed stream line", error=str(e), line=line[:200])
        return items


def extract_text(item: Any) -> Optional[str]:
    """Text fragment carried by a decoded stream line, if any"""

    if not isinstance(item, dict):
        return None
    if "error" in item:
        logger.warning("Stream reported an error", error=item.get("error"))
        return None
    text = item.get("text")
    if isinstance(text, str) and text:
        return text
    return None
