"""
Hierarchy synchronisation exception hierarchy.

Every failure the sync pipeline can raise derives from HierarchySyncError so
the scheduled job can log and record one type at the top level, while the
adapter can still tell a per-node problem from a run-level one.

Scope of each error:
  HierarchyParsingError     run-level   raw payload is not the expected format
  HierarchyResolutionError  run-level   external levels cannot be mapped
  MissingParentError        node-level  a non-root level has no parent
  HierarchyConflictError    node-level  one external id, two parents

Usage:
    from kpi_dashboard.core.exceptions import HierarchyResolutionError

    raise HierarchyResolutionError("Hierarchy missing", level_name="REGION")
"""


class HierarchySyncError(Exception):
    """Base class for all hierarchy synchronisation failures."""


class HierarchyParsingError(HierarchySyncError):
    """Raised when a raw central-hierarchy response cannot be parsed.

    Args:
        message: Human-readable explanation.
        parser: Name of the parser that rejected the payload.
    """

    def __init__(self, message: str, parser: str | None = None) -> None:
        self.parser = parser
        if parser:
            message = f"[{parser}] {message}"
        super().__init__(message)


class HierarchyResolutionError(HierarchySyncError):
    """Raised when an external level name matches no local hierarchy level.

    Fatal for the whole run: without the level mapping no node can be placed.
    """

    def __init__(self, message: str, level_name: str | None = None) -> None:
        self.level_name = level_name
        if level_name is not None:
            message = f"{message}: {level_name!r}"
        super().__init__(message)


class MissingParentError(HierarchySyncError):
    """Raised when a non-root level cannot resolve its parent node."""

    def __init__(self, level_id: str, parent_level_id: str | None) -> None:
        self.level_id = level_id
        self.parent_level_id = parent_level_id
        super().__init__(
            f"No parent at level {parent_level_id!r} for level {level_id!r}"
        )


class HierarchyConflictError(HierarchySyncError):
    """Raised when one external id resolves to two different parents in a run.

    Args:
        external_id: The external id being built.
        existing_parent_id: Parent node_id recorded on first sighting.
        parent_id: Conflicting parent node_id.
    """

    def __init__(
        self,
        external_id: str | None,
        existing_parent_id: str | None,
        parent_id: str | None,
    ) -> None:
        self.external_id = external_id
        self.existing_parent_id = existing_parent_id
        self.parent_id = parent_id
        super().__init__(
            f"Node {external_id} cannot have multiple parents "
            f"({existing_parent_id} vs {parent_id})"
        )
