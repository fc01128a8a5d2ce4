"""
Link events and batch parsing.

A link event says "user U's member M is now (or no longer) in container C".
Producers publish one JSON object per message:

    {
        "userId": 1,
        "containerId": 5,
        "memberId": 100,
        "action": "ADD",
        "displayName": "Groceries"
    }

Budget producers attach an expense to several budgets at once and send
"containerIds": [5, 7] instead; such a record expands into one event per
container, in list order.

Invariants:
    - Parsing never raises for a whole batch; bad records are dropped one by one
    - Event order in the output equals arrival order minus dropped records
    - A missing or null action is ADD

How to change safely:
    - New fields must be optional so older producers keep working
    - Keep MalformedEventError a ValueError subclass; callers catch ValueError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..stream.base import StreamPos, StreamRecord, StreamSerializationError

logger = logging.getLogger(__name__)


class MalformedEventError(ValueError):
    """A record could not be turned into a link event."""

    pass


class LinkAction(Enum):
    """What a link event does to the (container, user) member set."""

    ADD = "ADD"
    REMOVE = "REMOVE"
    UPDATE = "UPDATE"

    @classmethod
    def normalize(cls, raw: Any, strict: bool = False) -> LinkAction:
        """Map a raw action value to a LinkAction.

        Null means ADD. Unrecognized values also mean ADD unless strict is
        set, in which case they are rejected.

        Raises:
            MalformedEventError: If strict and the value is not recognized
        """
        if raw is None:
            return cls.ADD

        if isinstance(raw, str):
            try:
                return cls(raw.strip().upper())
            except ValueError:
                pass

        if strict:
            raise MalformedEventError(f"Unrecognized action: {raw!r}")

        logger.warning("Unrecognized action treated as ADD", extra={"action": repr(raw)})
        return cls.ADD

    @property
    def removes(self) -> bool:
        return self is LinkAction.REMOVE


def _require_int(data: dict[str, Any], name: str) -> int:
    value = data.get(name)
    if value is None:
        raise MalformedEventError(f"Missing required field: {name}")
    return _coerce_int(value, name)


def _coerce_int(value: Any, name: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise MalformedEventError(f"Field {name} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise MalformedEventError(f"Field {name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class LinkEvent:
    """A normalized association mutation.

    Attributes:
        user_id: Owner of the association
        container_id: Budget, category or payment method ID
        member_id: Expense ID
        action: ADD, REMOVE or UPDATE (UPDATE merges like ADD)
        display_name: Container name carried for logging only
        previous_container_id: Container the member is moving away from
            (single-event repointing only)
        stream_pos: Where the event was read from
    """

    user_id: int
    container_id: int
    member_id: int
    action: LinkAction = LinkAction.ADD
    display_name: str | None = None
    previous_container_id: int | None = None
    stream_pos: StreamPos | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        """Wire representation, as producers send it."""
        data: dict[str, Any] = {
            "userId": self.user_id,
            "containerId": self.container_id,
            "memberId": self.member_id,
            "action": self.action.value,
        }
        if self.display_name is not None:
            data["displayName"] = self.display_name
        if self.previous_container_id is not None:
            data["previousContainerId"] = self.previous_container_id
        return data

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        stream_pos: StreamPos | None = None,
        strict_actions: bool = False,
    ) -> list[LinkEvent]:
        """Create events from a wire dictionary.

        Args:
            data: Decoded record payload
            stream_pos: Optional stream position
            strict_actions: Reject unrecognized actions instead of defaulting to ADD

        Returns:
            One event per referenced container, in payload order

        Raises:
            MalformedEventError: If required fields are missing or mistyped
        """
        if not isinstance(data, dict):
            raise MalformedEventError(f"Event must be a JSON object, got {type(data).__name__}")

        user_id = _require_int(data, "userId")
        member_id = _require_int(data, "memberId")
        action = LinkAction.normalize(data.get("action"), strict=strict_actions)

        container_ids: list[int] = []
        if data.get("containerId") is not None:
            container_ids.append(_coerce_int(data["containerId"], "containerId"))

        raw_many = data.get("containerIds")
        if raw_many is not None:
            if not isinstance(raw_many, list):
                raise MalformedEventError("Field containerIds must be a list")
            for raw in raw_many:
                cid = _coerce_int(raw, "containerIds")
                if cid not in container_ids:
                    container_ids.append(cid)

        if not container_ids:
            raise MalformedEventError("Missing required field: containerId")

        display_name = data.get("displayName")
        if display_name is not None and not isinstance(display_name, str):
            display_name = str(display_name)

        previous = data.get("previousContainerId")
        previous_id = _coerce_int(previous, "previousContainerId") if previous is not None else None

        return [
            cls(
                user_id=user_id,
                container_id=cid,
                member_id=member_id,
                action=action,
                display_name=display_name,
                previous_container_id=previous_id,
                stream_pos=stream_pos,
            )
            for cid in container_ids
        ]


@dataclass
class ParsedBatch:
    """Outcome of parsing one transport batch.

    Attributes:
        events: Normalized events in arrival order
        received: Number of raw records in the batch
        dropped: Number of records that failed to parse
    """

    events: list[LinkEvent] = field(default_factory=list)
    received: int = 0
    dropped: int = 0


def parse_record(record: StreamRecord, strict_actions: bool = False) -> list[LinkEvent]:
    """Decode one raw record into link events.

    Raises:
        MalformedEventError: If the record is not a valid link event
    """
    try:
        data = record.value_json()
    except StreamSerializationError as e:
        raise MalformedEventError(str(e)) from e
    return LinkEvent.from_dict(data, record.position, strict_actions=strict_actions)


def parse_batch(records: list[StreamRecord], strict_actions: bool = False) -> ParsedBatch:
    """Parse a batch record by record, dropping the ones that fail.

    Args:
        records: Raw records in delivery order
        strict_actions: Reject unrecognized actions

    Returns:
        ParsedBatch with the surviving events in order
    """
    parsed = ParsedBatch(received=len(records))

    for record in records:
        try:
            parsed.events.extend(parse_record(record, strict_actions=strict_actions))
        except MalformedEventError as e:
            parsed.dropped += 1
            logger.warning(
                "Dropping malformed link event",
                extra={"position": str(record.position), "error": str(e)},
            )

    return parsed
