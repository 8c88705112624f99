"""
Reference sync remote: the server half of the push/pull protocol.

Each pushed record replaces the stored copy for (household, table, id) and is
stamped with server time; pull returns what changed after `since` on that
clock, oldest first, in pages addressed by an opaque cursor.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Generator, List, Optional, Tuple

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request
from pydantic import ValidationError
from sqlalchemy import and_, or_
from sqlmodel import Session, select

from domus.clock import ensure_utc, format_timestamp, parse_timestamp
from domus.models.records import TableKind
from domus.models.remote import RemoteChange, RemoteSession
from domus.sync.types import ChangeRecord

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_PAGE_SIZE = 1000


def get_remote_db(request: Request) -> Generator[Session, None, None]:
    with Session(request.app.state.engine) as session:
        yield session


def get_caller(
    authorization: Optional[str] = Header(default=None),
    session: Session = Depends(get_remote_db),
) -> RemoteSession:
    """Resolve the bearer token to a session, or 401."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    caller = session.get(RemoteSession, token.strip())
    if caller is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return caller


@router.get("/auth/me")
def whoami(caller: RemoteSession = Depends(get_caller)):
    return {"userId": caller.user_id, "householdId": caller.household_id}


@router.post("/sync/push")
def push_changes(
    request: Request,
    body: Dict[str, Any] = Body(...),
    caller: RemoteSession = Depends(get_caller),
    session: Session = Depends(get_remote_db),
):
    changes = body.get("changes")
    if not isinstance(changes, list):
        raise HTTPException(status_code=400, detail="Invalid request: changes must be an array")

    try:
        records = [ChangeRecord.model_validate(raw) for raw in changes]
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid change record: {exc}")

    now = ensure_utc(request.app.state.clock())
    household_id = caller.household_id or ""
    pushed = 0
    for record in records:
        if record.table == TableKind.USERS.value and not record.is_tombstone and not record.data.get("name"):
            logger.debug("Skipping incomplete user record %s", record.id)
            continue

        row = session.exec(
            select(RemoteChange).where(
                RemoteChange.household_id == household_id,
                RemoteChange.table_name == record.table,
                RemoteChange.record_id == record.id,
            )
        ).first()
        if row is None:
            row = RemoteChange(
                household_id=household_id,
                table_name=record.table,
                record_id=record.id,
                user_id=caller.user_id,
                operation="upsert",
                data_json="{}",
                updated_at=now,
            )
        row.user_id = caller.user_id
        row.operation = "delete" if record.is_tombstone else "upsert"
        row.data_json = json.dumps(record.data)
        row.updated_at = now
        row.deleted_at = now if record.is_tombstone else None
        session.add(row)
        pushed += 1
    session.commit()

    logger.debug(
        "Push: %d/%d records (chunk %s/%s)",
        pushed, len(records), body.get("chunkIndex", 0), body.get("totalChunks", 1),
    )
    return {
        "success": True,
        "pushed": pushed,
        "chunkIndex": body.get("chunkIndex"),
        "totalChunks": body.get("totalChunks"),
        "timestamp": format_timestamp(request.app.state.clock()),
    }


@router.get("/sync/pull")
def pull_changes(
    request: Request,
    since: Optional[str] = None,
    limit: int = Query(default=500, ge=1, le=MAX_PAGE_SIZE),
    cursor: Optional[str] = None,
    caller: RemoteSession = Depends(get_caller),
    session: Session = Depends(get_remote_db),
):
    query = select(RemoteChange)
    if caller.household_id:
        query = query.where(RemoteChange.household_id == caller.household_id)
    else:
        query = query.where(RemoteChange.user_id == caller.user_id)

    if since:
        since_dt = parse_timestamp(since)
        if since_dt is None:
            raise HTTPException(status_code=400, detail=f"Invalid since: {since}")
        query = query.where(RemoteChange.updated_at > since_dt)

    if cursor:
        after_ts, after_id = _decode_cursor(cursor)
        query = query.where(
            or_(
                RemoteChange.updated_at > after_ts,
                and_(RemoteChange.updated_at == after_ts, RemoteChange.id > after_id),
            )
        )

    rows = session.exec(
        query.order_by(RemoteChange.updated_at, RemoteChange.id).limit(limit + 1)
    ).all()
    has_more = len(rows) > limit
    page: List[RemoteChange] = list(rows[:limit])

    return {
        "success": True,
        "changes": [_to_wire(row) for row in page],
        "count": len(page),
        "hasMore": has_more,
        "nextCursor": _encode_cursor(page[-1]) if has_more and page else None,
        "timestamp": format_timestamp(request.app.state.clock()),
    }


def _to_wire(row: RemoteChange) -> Dict[str, Any]:
    return {
        "table": row.table_name,
        "id": row.record_id,
        "data": json.loads(row.data_json),
        "updatedAt": format_timestamp(row.updated_at),
        "deletedAt": format_timestamp(row.deleted_at) if row.deleted_at else None,
    }


def _encode_cursor(row: RemoteChange) -> str:
    return f"{format_timestamp(row.updated_at)}|{row.id}"


def _decode_cursor(cursor: str) -> Tuple[datetime, int]:
    ts, _, row_id = cursor.partition("|")
    parsed = parse_timestamp(ts)
    if parsed is None or not row_id.isdigit():
        raise HTTPException(status_code=400, detail=f"Invalid cursor: {cursor}")
    return parsed, int(row_id)
