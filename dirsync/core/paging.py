"""Opaque-cursor pagination state for backends that cannot report totals."""

from enum import Enum
from typing import Dict, Optional, Tuple

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

# Oversized totalResults that keeps a paging client asking for the next page
SENTINEL_TOTAL = 99999999


class CursorStatus(str, Enum):
    """Outcome of a cursor lookup."""
    FRESH = "fresh"
    CONTINUE = "continue"
    EMPTY = "empty"


class CursorLookup(BaseModel):
    """What the caller should request next."""

    status: CursorStatus
    cursor: Optional[str] = None


class _CursorState(BaseModel):
    expected_start_index: Optional[int] = None
    cursor: Optional[str] = None
    exhausted: bool = False


class PagingCursorStore:
    """Continuation state per ``(tenant, resource_type)``.

    A stored cursor is only valid for the start index the caller is expected
    to request next and is replaced once that page has been served. Any other
    start index above 1 yields an empty page and resets the state, which
    stops a client that keeps paging on the sentinel total.

    Assumes a single pager per ``(tenant, resource_type)``; concurrent pagers
    on the same resource type overwrite each other's cursor.
    """

    def __init__(self) -> None:
        self._states: Dict[Tuple[str, str], _CursorState] = {}

    def next(
        self,
        tenant: str,
        resource_type: str,
        requested_start_index: Optional[int],
    ) -> CursorLookup:
        """Decide how to serve a page request.

        Args:
            tenant: Tenant key
            resource_type: Resource type, e.g. "users"
            requested_start_index: 1-based start index from the caller, if any

        Returns:
            FRESH to start from the first page, CONTINUE with the cursor to
            replay, or EMPTY when the request is out of sequence
        """
        key = (tenant, resource_type)
        if not requested_start_index or requested_start_index <= 1:
            if self._states.pop(key, None) is not None:
                logger.debug("Discarding stale cursor", tenant=tenant, resource_type=resource_type)
            return CursorLookup(status=CursorStatus.FRESH)

        state = self._states.get(key)
        if (
            state is not None
            and not state.exhausted
            and state.cursor is not None
            and state.expected_start_index == requested_start_index
        ):
            # Kept until advance() replaces it, so a failed page can be retried
            return CursorLookup(status=CursorStatus.CONTINUE, cursor=state.cursor)

        self._states.pop(key, None)
        logger.debug(
            "Out of sequence page request, returning empty page",
            tenant=tenant,
            resource_type=resource_type,
            requested_start_index=requested_start_index,
            expected_start_index=state.expected_start_index if state else None,
            exhausted=state.exhausted if state else None,
        )
        return CursorLookup(status=CursorStatus.EMPTY)

    def advance(
        self,
        tenant: str,
        resource_type: str,
        start_index: Optional[int],
        page_size: int,
        continuation: Optional[str],
    ) -> None:
        """Record the outcome of a served page.

        Args:
            tenant: Tenant key
            resource_type: Resource type
            start_index: Start index of the served page (None means 1)
            page_size: Number of items returned in the page
            continuation: Backend continuation marker, None when exhausted
        """
        key = (tenant, resource_type)
        if continuation:
            self._states[key] = _CursorState(
                expected_start_index=(start_index or 1) + page_size,
                cursor=continuation,
            )
        else:
            self._states[key] = _CursorState(exhausted=True)

    def reset(self, tenant: str, resource_type: Optional[str] = None) -> None:
        """Clear the state of one resource type, or of every type of a tenant."""
        if resource_type is not None:
            self._states.pop((tenant, resource_type), None)
            return
        for key in [k for k in self._states if k[0] == tenant]:
            del self._states[key]

    def expected_start_index(self, tenant: str, resource_type: str) -> Optional[int]:
        state = self._states.get((tenant, resource_type))
        return state.expected_start_index if state else None

    def is_exhausted(self, tenant: str, resource_type: str) -> bool:
        state = self._states.get((tenant, resource_type))
        return bool(state and state.exhausted)


def total_results(
    start_index: Optional[int],
    count: Optional[int],
    page_size: int,
    has_more: bool,
) -> int:
    """Compute totalResults for a served page.

    An unpaginated request reports the real count. A paginated request reports
    the sentinel while a continuation remains and the running count
    ``offset + page_size`` on the final page.
    """
    if start_index is None and count is None:
        return page_size
    if has_more:
        return SENTINEL_TOTAL
    return (start_index or 1) - 1 + page_size
