"""Persistence for chain mirror jobs."""

from __future__ import annotations

import uuid
from collections import defaultdict
from typing import Any, Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import ChainMirrorJob, MirrorKind, MirrorState


class MirrorJobRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def enqueue(
        self,
        kind: MirrorKind | str,
        entity_id: str,
        *,
        user_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> ChainMirrorJob:
        """Return the job tracking ``(kind, entity_id)``, creating it when absent."""

        kind_value = MirrorKind(kind).value
        existing = self.find(kind_value, entity_id)
        if existing is not None:
            return existing
        job = ChainMirrorJob(
            job_id=uuid.uuid4().hex,
            kind=kind_value,
            entity_id=entity_id,
            user_id=user_id,
            state=MirrorState.PENDING.value,
            retry_count=0,
            payload=payload or {},
        )
        self._session.add(job)
        self._session.flush()
        return job

    # ------------------------------------------------------------------
    # Queries

    def get(self, job_id: str, *, for_update: bool = False) -> ChainMirrorJob | None:
        stmt = select(ChainMirrorJob).where(ChainMirrorJob.job_id == job_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalar_one_or_none()

    def find(self, kind: MirrorKind | str, entity_id: str) -> ChainMirrorJob | None:
        stmt = select(ChainMirrorJob).where(
            ChainMirrorJob.kind == MirrorKind(kind).value,
            ChainMirrorJob.entity_id == entity_id,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def pending(self, kind: MirrorKind | str, *, limit: int | None = None) -> Sequence[ChainMirrorJob]:
        stmt = (
            select(ChainMirrorJob)
            .where(
                ChainMirrorJob.kind == MirrorKind(kind).value,
                ChainMirrorJob.state == MirrorState.PENDING.value,
            )
            .order_by(ChainMirrorJob.created_at, ChainMirrorJob.job_id)
        )
        if limit:
            stmt = stmt.limit(limit)
        return self._session.execute(stmt).scalars().all()

    def has_pending_for_user(self, uid: str) -> bool:
        stmt = (
            select(ChainMirrorJob.job_id)
            .where(
                ChainMirrorJob.user_id == uid,
                ChainMirrorJob.state == MirrorState.PENDING.value,
            )
            .limit(1)
        )
        return self._session.execute(stmt).first() is not None

    def users_with_pending(self, uids: Iterable[str]) -> set[str]:
        uid_list = list(uids)
        if not uid_list:
            return set()
        stmt = (
            select(ChainMirrorJob.user_id)
            .where(
                ChainMirrorJob.user_id.in_(uid_list),
                ChainMirrorJob.state == MirrorState.PENDING.value,
            )
            .distinct()
        )
        return {row[0] for row in self._session.execute(stmt)}

    def counts_by_kind(self) -> dict[str, dict[str, int]]:
        rows = self._session.execute(
            select(ChainMirrorJob.kind, ChainMirrorJob.state, func.count(ChainMirrorJob.job_id))
            .group_by(ChainMirrorJob.kind, ChainMirrorJob.state)
        ).all()
        counts: dict[str, dict[str, int]] = defaultdict(dict)
        for kind, state, total in rows:
            counts[kind][state] = int(total)
        return {kind.value: dict(counts.get(kind.value, {})) for kind in MirrorKind}
