"""eventor_sync.xml_probe

Navigation helpers over Eventor result XML and the ordered field extractors
used when the same logical value lives in different places depending on the
schema version (IOF XML 2.0.3 vs 3.0 and Eventor's own variants).

Each probed field has exactly one tuple of extractor functions, tried in
priority order; the first non-None result wins.  Schema-drift fixes belong
in these tuples, not in the parsers.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable

from bs4 import BeautifulSoup, Tag
from lxml import etree

from eventor_sync.normalize import normalize_space, parse_int, trim

Extractor = Callable[[Tag], Any]


class XmlLoadError(Exception):
    """Raised when a document cannot be loaded as XML at all."""


def load_xml(text: str | bytes | None) -> BeautifulSoup:
    """Load a document for navigation.

    bs4's lxml backend recovers from broken markup, so the document is
    first checked by a strict lxml parse; truncated or malformed input
    raises XmlLoadError instead of yielding a partial tree.  Text input
    is already decoded and is re-encoded as UTF-8 whatever its
    declaration says.
    """
    if text is None or (isinstance(text, (str, bytes)) and not text.strip()):
        raise XmlLoadError("empty document")
    if isinstance(text, str):
        raw, encoding = text.strip().encode("utf-8"), "utf-8"
    else:
        raw, encoding = text.strip(), None
    parser = etree.XMLParser(resolve_entities=False, no_network=True, encoding=encoding)
    try:
        etree.fromstring(raw, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise XmlLoadError(f"malformed XML: {exc}") from exc
    try:
        return BeautifulSoup(raw, "xml", from_encoding=encoding)
    except Exception as exc:  # noqa: BLE001
        raise XmlLoadError(f"{type(exc).__name__}: {exc}") from exc


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------

def child(tag: Tag | None, *path: str) -> Tag | None:
    """Follow a path of direct-child element names; None when any step is missing."""
    node = tag
    for name in path:
        if node is None:
            return None
        node = node.find(name, recursive=False)
    return node


def children(tag: Tag | None, name: str) -> list[Tag]:
    if tag is None:
        return []
    return tag.find_all(name, recursive=False)


def child_text(tag: Tag | None, *path: str) -> str | None:
    node = child(tag, *path)
    if node is None:
        return None
    return trim(node.get_text())


def attr(tag: Tag | None, name: str, *path: str) -> str | None:
    """Attribute ``name`` on the element reached by ``path`` (or on ``tag`` itself)."""
    node = child(tag, *path) if path else tag
    if node is None:
        return None
    value = node.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return trim(value)


def first_of(node: Tag | None, extractors: Iterable[Extractor]) -> Any:
    if node is None:
        return None
    for extract in extractors:
        value = extract(node)
        if value is not None:
            return value
    return None


def typed_value(tag: Tag | None, name: str, wanted_type: str) -> str | None:
    """Text of the ``name`` child whose ``type`` attribute is ``wanted_type``.

    Falls back to an untyped ``name`` child; a child typed for something
    else (e.g. Position type="Course") is never used.
    """
    candidates = children(tag, name)
    for c in candidates:
        if c.get("type") == wanted_type:
            return trim(c.get_text())
    for c in candidates:
        if c.get("type") is None:
            return trim(c.get_text())
    return None


# ---------------------------------------------------------------------------
# Person
# ---------------------------------------------------------------------------

PERSON_ID_EXTRACTORS: tuple[Extractor, ...] = (
    # IOF 2.0.3 / Eventor: <PersonId>123</PersonId>
    lambda p: parse_int(child_text(p, "PersonId")),
    # IOF 3.0: <Id type="Eventor">123</Id>
    lambda p: parse_int(child_text(p, "Id")),
    # Attribute form: <PersonId id="123"/>
    lambda p: parse_int(attr(p, "id", "PersonId")),
)


def extract_person_id(person: Tag | None) -> int | None:
    return first_of(person, PERSON_ID_EXTRACTORS)


def given_name_seq1(person: Tag | None) -> str | None:
    """First given name: the Given with sequence="1", else the first untyped one."""
    givens = children(child(person, "PersonName"), "Given")
    if not givens:
        givens = children(child(person, "Name"), "Given")
    for g in givens:
        if g.get("sequence") == "1":
            return trim(g.get_text())
    for g in givens:
        if g.get("sequence") is None:
            return trim(g.get_text())
    return None


def family_name(person: Tag | None) -> str | None:
    return child_text(person, "PersonName", "Family") or child_text(person, "Name", "Family")


def person_display_name(person: Tag | None) -> str:
    family = family_name(person) or "<unknown>"
    given = " ".join(
        t for t in (trim(g.get_text()) for g in children(child(person, "PersonName"), "Given")) if t
    )
    return normalize_space(f"{family} {given}") or family


# ---------------------------------------------------------------------------
# Class
# ---------------------------------------------------------------------------

CLASS_START_COUNT_EXTRACTORS: tuple[Extractor, ...] = (
    lambda cr: parse_int(attr(cr, "numberOfStarts")),
    lambda cr: parse_int(attr(cr, "noOfStarts", "EventClass", "ClassRaceInfo")),
    lambda cr: parse_int(attr(cr, "noOfStarts", "ClassRaceInfo")),
)


def extract_class_start_count(class_result: Tag | None) -> int | None:
    return first_of(class_result, CLASS_START_COUNT_EXTRACTORS)


def extract_class_name(class_result: Tag | None) -> str | None:
    return normalize_space(child_text(class_result, "EventClass", "Name")) or normalize_space(
        child_text(class_result, "Class", "Name")
    )


def extract_class_type_id(class_result: Tag | None) -> int | None:
    return parse_int(child_text(class_result, "EventClass", "ClassTypeId"))


def competitor_status(result: Tag | None) -> str | None:
    """CompetitorStatus value="OK" (IOF 2) or <Status>OK</Status> (IOF 3)."""
    return attr(result, "value", "CompetitorStatus") or child_text(result, "Status")


# ---------------------------------------------------------------------------
# Event
# ---------------------------------------------------------------------------

def extract_event_year_date(result_list: Tag | None) -> str | None:
    return child_text(result_list, "Event", "StartDate", "Date") or child_text(
        result_list, "Event", "StartTime", "Date"
    )
