"""
Central hierarchy payload parsers.

Converts a raw response body from the central hierarchy system into a
parser-agnostic HierarchyDetails (levels + flat nodes). Several wire formats
are supported behind one contract; the sync job picks one by name:

    parser = get_parser(current_app.config["CENTRAL_HIERARCHY_FORMAT"])
    details = parser.parse(raw_body)

Parsers are strict about the envelope (invalid JSON or a missing top-level
structure raises HierarchyParsingError) and lenient about everything inside a
node: missing keys, nulls and non-string values never fail a parse.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from kpi_dashboard.core.exceptions import HierarchyParsingError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Parsed representation
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ExternalHierarchyLevel:
    """One level of the central hierarchy (level 0 is the root)."""

    level: int
    display_name: str
    name: str | None = None
    id: str | None = None


@dataclass
class HierarchyNode:
    """Flat record of one accountable line in the central hierarchy.

    Each level carries a unique id and a display name; any of them may be
    None when the central system did not supply it.
    """

    bu: str | None = None
    bu_unique_id: str | None = None
    vertical: str | None = None
    vertical_unique_id: str | None = None
    account: str | None = None
    account_unique_id: str | None = None
    portfolio: str | None = None
    portfolio_unique_id: str | None = None
    root: str | None = None
    root_unique_id: str | None = None
    opportunity: str | None = None
    opportunity_unique_id: str | None = None


@dataclass
class HierarchyDetails:
    levels: list[ExternalHierarchyLevel] = field(default_factory=list)
    nodes: list[HierarchyNode] = field(default_factory=list)


NODE_FIELDS = tuple(HierarchyNode.__dataclass_fields__)


# ═══════════════════════════════════════════════════════════════════════════
#  Lenient value coercion
# ═══════════════════════════════════════════════════════════════════════════


def _as_text(value: Any) -> str | None:
    """Return a stripped string, or None for missing/blank/structured values."""
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _load_json(raw: str | bytes | None, parser: str) -> Any:
    if raw is None or (isinstance(raw, (str, bytes)) and not raw.strip()):
        raise HierarchyParsingError("Empty response body", parser=parser)
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise HierarchyParsingError(f"Invalid JSON: {exc}", parser=parser) from exc


def _parse_levels(raw_levels: Any) -> list[ExternalHierarchyLevel]:
    """Parse level entries, dropping ones without a level number or name."""
    levels = []
    if not isinstance(raw_levels, list):
        return levels
    for entry in raw_levels:
        if not isinstance(entry, dict):
            continue
        level = _as_int(entry.get("level"))
        display_name = _as_text(entry.get("displayName") or entry.get("display_name"))
        if level is None or display_name is None:
            logger.debug("Ignoring incomplete hierarchy level entry: %s", entry)
            continue
        levels.append(ExternalHierarchyLevel(
            level=level,
            display_name=display_name,
            name=_as_text(entry.get("name")),
            id=_as_text(entry.get("id")),
        ))
    return levels


# ═══════════════════════════════════════════════════════════════════════════
#  Parsers
# ═══════════════════════════════════════════════════════════════════════════


class HierarchyDetailParser:
    """Base contract: ``parse(raw) -> HierarchyDetails``."""

    name = "base"

    def parse(self, raw_response: str | bytes) -> HierarchyDetails:
        raise NotImplementedError


class SF360Parser(HierarchyDetailParser):
    """Parser for the SF360 central hierarchy export.

    Shape::

        {"data": [{"hierarchyGroup": "SF360Hierarchy",
                   "hierarchyDetails": {"hierarchyLevels": [...],
                                        "hierarchyNode": [{"BU": ..., "BU_unique_id": ...}]}}]}
    """

    name = "sf360"

    # HierarchyNode field -> SF360 key
    _KEYS = {
        "bu": "BU",
        "vertical": "Vertical",
        "account": "Account",
        "portfolio": "Portfolio",
        "root": "Root",
        "opportunity": "Opportunity",
    }

    def _parse_node(self, raw: dict) -> HierarchyNode:
        values = {}
        for attr, key in self._KEYS.items():
            values[attr] = _as_text(raw.get(key))
            values[f"{attr}_unique_id"] = _as_text(raw.get(f"{key}_unique_id"))
        return HierarchyNode(**values)

    def parse(self, raw_response: str | bytes) -> HierarchyDetails:
        payload = _load_json(raw_response, self.name)
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise HierarchyParsingError("Missing 'data' list", parser=self.name)

        details = HierarchyDetails()
        for group in payload["data"]:
            if not isinstance(group, dict):
                continue
            body = group.get("hierarchyDetails")
            if not isinstance(body, dict):
                logger.warning("SF360 group %s has no hierarchyDetails",
                               group.get("hierarchyGroup"))
                continue
            details.levels.extend(_parse_levels(body.get("hierarchyLevels")))
            for raw_node in body.get("hierarchyNode") or []:
                if isinstance(raw_node, dict):
                    details.nodes.append(self._parse_node(raw_node))

        logger.info("SF360 payload parsed: %d levels, %d nodes",
                    len(details.levels), len(details.nodes))
        return details


class FlatJsonParser(HierarchyDetailParser):
    """Parser for the flat internal format.

    Shape::

        {"hierarchyLevels": [{"level": 1, "displayName": "BU"}, ...],
         "hierarchyNodes": [{"bu": ..., "bu_unique_id": ..., ...}]}
    """

    name = "flat"

    def parse(self, raw_response: str | bytes) -> HierarchyDetails:
        payload = _load_json(raw_response, self.name)
        if not isinstance(payload, dict) or "hierarchyNodes" not in payload:
            raise HierarchyParsingError("Missing 'hierarchyNodes'", parser=self.name)

        nodes = [
            HierarchyNode(**{f: _as_text(raw.get(f)) for f in NODE_FIELDS})
            for raw in payload.get("hierarchyNodes") or []
            if isinstance(raw, dict)
        ]
        return HierarchyDetails(levels=_parse_levels(payload.get("hierarchyLevels")), nodes=nodes)


# ── Parser registry ──────────────────────────────────────────────────────────

_PARSERS: dict[str, type[HierarchyDetailParser]] = {
    SF360Parser.name: SF360Parser,
    FlatJsonParser.name: FlatJsonParser,
}


def get_parser(name: str) -> HierarchyDetailParser:
    """Return a parser instance for a configured format name."""
    parser_cls = _PARSERS.get((name or "").lower())
    if parser_cls is None:
        raise ValueError(f"Unknown central hierarchy format: {name!r} "
                         f"(expected one of {sorted(_PARSERS)})")
    return parser_cls()
