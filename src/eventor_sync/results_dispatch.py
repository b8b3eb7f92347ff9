"""eventor_sync.results_dispatch

Selects the result parser for an event's form tag.
"""

from __future__ import annotations

import enum
import logging

from eventor_sync import parse_results_multiday, parse_results_relay, parse_results_standard
from eventor_sync.shared import ParseContext, ParseOutcome

log = logging.getLogger(__name__)


class EventForm(enum.Enum):
    STANDARD = "Individual"
    IND_MULTI_DAY = "IndMultiDay"
    RELAY_SINGLE_DAY = "RelaySingleDay"
    UNKNOWN = "Unknown"

    @classmethod
    def from_tag(cls, tag: str | None) -> "EventForm":
        """Map an Eventor eventForm value (case-insensitive) to an EventForm.

        A missing tag means an ordinary individual event.
        """
        if tag is None or not tag.strip():
            return cls.STANDARD
        return _FORM_TAGS.get(tag.strip().lower(), cls.UNKNOWN)


_FORM_TAGS = {
    "individual": EventForm.STANDARD,
    "indsingleday": EventForm.STANDARD,
    "indmultiday": EventForm.IND_MULTI_DAY,
    "relaysingleday": EventForm.RELAY_SINGLE_DAY,
    "relay": EventForm.RELAY_SINGLE_DAY,
}

_PARSERS = {
    EventForm.STANDARD: parse_results_standard.parse,
    EventForm.IND_MULTI_DAY: parse_results_multiday.parse,
    EventForm.RELAY_SINGLE_DAY: parse_results_relay.parse,
}


def parse_results(
    form: EventForm,
    xml_text: str | bytes | None,
    context: ParseContext,
) -> ParseOutcome:
    parser = _PARSERS.get(form)
    if parser is None:
        log.warning("unknown event form for event %s; using standard parser", context.event_id)
        outcome = parse_results_standard.parse(xml_text, context)
        outcome.warn(
            "Unknown event form; parsed as a standard result list",
            event_id=context.event_id,
        )
        return outcome
    return parser(xml_text, context)
