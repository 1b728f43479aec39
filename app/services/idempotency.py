"""Insert-once guard backed by unique indexes, so it survives restarts."""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from beanie import Document
from pymongo.errors import DuplicateKeyError

from app.core.logging import get_logger

log = get_logger(__name__)

D = TypeVar("D", bound=Document)


@dataclass
class GuardResult(Generic[D]):
    accepted: bool
    record: D


async def begin_if_absent(document: D, *lookup: Any) -> GuardResult[D]:
    """
    Insert `document` unless a document with the same unique key exists.

    `lookup` are Beanie query expressions that find the existing document on a
    unique-index collision. A concurrent duplicate loses the race on the index
    and gets the winner's record back with accepted=False.
    """
    try:
        await document.insert()
    except DuplicateKeyError:
        existing = await type(document).find_one(*lookup)
        if existing is None:
            # Collided on a different unique index than the one looked up.
            raise
        log.info("idempotent_replay", collection=type(document).__name__, record_id=str(existing.id))
        return GuardResult(accepted=False, record=existing)
    return GuardResult(accepted=True, record=document)
