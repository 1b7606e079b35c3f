from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import ActivityRecord


class ActivityRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, record: ActivityRecord) -> ActivityRecord:
        self._session.add(record)
        self._session.flush()
        return record

    def get(self, activity_id: str) -> ActivityRecord | None:
        return self._session.get(ActivityRecord, activity_id)

    def find_submission(self, uid: str, submission_id: str) -> ActivityRecord | None:
        return self._session.execute(
            select(ActivityRecord).where(
                ActivityRecord.user_id == uid,
                ActivityRecord.submission_id == submission_id,
            )
        ).scalar_one_or_none()

    def count_since(self, uid: str, since: datetime) -> int:
        return int(
            self._session.execute(
                select(func.count(ActivityRecord.activity_id)).where(
                    ActivityRecord.user_id == uid,
                    ActivityRecord.created_at >= since,
                )
            ).scalar_one()
        )
