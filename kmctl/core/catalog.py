"""Parsing of the remote host's published macro list."""

from __future__ import annotations

from html.parser import HTMLParser

from kmctl.core.model import MacroEntry


class _CatalogCollector(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.entries: list[MacroEntry] = []
        self._group: str | None = None
        self._option: dict[str, str | None] | None = None
        self._option_text: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        tag = tag.lower()
        if tag == "optgroup":
            self._flush_option()
            self._group = dict(attrs).get("label")
        elif tag == "option":
            self._flush_option()
            self._option = dict(attrs)
            self._option_text = []

    def handle_endtag(self, tag: str) -> None:
        tag = tag.lower()
        if tag in ("option", "select"):
            self._flush_option()
        elif tag == "optgroup":
            self._flush_option()
            self._group = None

    def handle_data(self, data: str) -> None:
        if self._option is not None:
            self._option_text.append(data)

    def close(self) -> None:
        super().close()
        self._flush_option()

    def _flush_option(self) -> None:
        if self._option is None:
            return
        label = self._option.get("label")
        if label is None:
            label = "".join(self._option_text)
        name = label.strip()
        uid = (self._option.get("value") or "").strip()
        self._option = None
        self._option_text = []
        if not name or not uid:
            return
        self.entries.append(MacroEntry(name=name, uid=uid, group=self._group))


def parse_macro_catalog(html: str) -> list[MacroEntry]:
    """Extract macro entries from ``<optgroup>``/``<option>`` markup.

    Attribute values and text have character references decoded. Options
    without a name or a value are dropped.
    """
    collector = _CatalogCollector()
    collector.feed(html)
    collector.close()
    return collector.entries
