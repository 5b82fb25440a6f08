"""
Notification sink: in-app alerts addressed to a role and optionally a user.

Delivery (toasts, email, push) happens elsewhere; this only records the
alert so dashboards can poll for it.
"""

from typing import List, Optional

import structlog
from pymongo.database import Database

from database import NEWEST_FIRST, create_document, get_documents
from schemas import Notification, Role, Severity

logger = structlog.get_logger(__name__)


class NotificationSink:
    collection = "notification"

    def __init__(self, db: Database):
        self.db = db

    def emit(self, notification: Notification) -> str:
        notification_id = create_document(self.db, self.collection, notification)
        logger.info(
            "notification_emitted",
            notification_id=notification_id,
            title=notification.title,
            target_role=notification.target_role.value,
            target_user_id=notification.target_user_id,
        )
        return notification_id

    def notify(
        self,
        title: str,
        message: str,
        target_role: Role,
        target_user_id: Optional[str] = None,
        severity: Severity = Severity.INFO,
    ) -> str:
        return self.emit(
            Notification(
                title=title,
                message=message,
                severity=severity,
                target_role=target_role,
                target_user_id=target_user_id,
            )
        )

    def list_for(self, role: Role, user_id: Optional[str] = None, limit: Optional[int] = 50) -> List[Notification]:
        query = {"target_role": role.value}
        if user_id:
            query["target_user_id"] = {"$in": [user_id, None]}
        docs = get_documents(self.db, self.collection, query, limit, sort=NEWEST_FIRST)
        return [Notification(**d) for d in docs]
