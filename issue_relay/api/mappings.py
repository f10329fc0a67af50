"""Read-only views of the identity map and intent ledger"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime

from issue_relay.models.base import get_db
from issue_relay.models import Direction, IntentStatus
from issue_relay.services.exceptions import MappingNotFound
from issue_relay.services.mapping_store import MappingStore

router = APIRouter(prefix="/api", tags=["mappings"])


class IssueMappingResponse(BaseModel):
    source_issue_id: int
    source_org: str
    source_repo: str
    source_issue_number: int
    author_login: Optional[str] = None
    title: Optional[str] = None
    state: str
    hub_issue_number: int
    updated_at: datetime

    class Config:
        from_attributes = True


class IssueMappingDetailResponse(IssueMappingResponse):
    body: Optional[str] = None
    comment_count: int
    synced_comment_count: int


class SyncIntentResponse(BaseModel):
    id: int
    direction: Direction
    event_kind: str
    entity_key: str
    status: IntentStatus
    remote_ref: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("/mappings/issues", response_model=List[IssueMappingResponse])
def list_issue_mappings(limit: int = 100, db: Session = Depends(get_db)):
    """List issue mappings, most recently updated first"""
    return MappingStore(db).list_issue_mappings(limit=limit)


@router.get("/mappings/issues/{source_issue_id}", response_model=IssueMappingDetailResponse)
def get_issue_mapping(source_issue_id: int, db: Session = Depends(get_db)):
    """Get one issue mapping with its comment counts"""
    try:
        row = MappingStore(db).get_issue_mapping(source_issue_id)
    except MappingNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return IssueMappingDetailResponse(
        source_issue_id=row.source_issue_id,
        source_org=row.source_org,
        source_repo=row.source_repo,
        source_issue_number=row.source_issue_number,
        author_login=row.author_login,
        title=row.title,
        body=row.body,
        state=row.state,
        hub_issue_number=row.hub_issue_number,
        updated_at=row.updated_at,
        comment_count=len(row.comments),
        synced_comment_count=len(row.synced_comments),
    )


@router.get("/intents", response_model=List[SyncIntentResponse])
def list_intents(status: Optional[IntentStatus] = None, limit: int = 100, db: Session = Depends(get_db)):
    """List recorded sync intents"""
    return MappingStore(db).list_intents(status=status, limit=limit)
