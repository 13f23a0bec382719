"""Notification delivery, one in-app row (and optional email) per recipient."""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models import Notification, User

logger = logging.getLogger(__name__)


@dataclass
class NotificationPayload:
    title: str
    message: str
    priority: str = "normal"
    link: str = "/pipeline"


async def users_with_roles(db: AsyncSession, company_id: str, roles: list[str]) -> list[User]:
    """Active users of ``company_id`` holding any of ``roles``."""
    result = await db.execute(
        select(User).where(User.company_id == company_id, User.is_active.is_(True))
    )
    wanted = set(roles)
    return [u for u in result.scalars().all() if wanted.intersection(u.role_list())]


class NotificationService:
    """Writes notifications in a session of their own.

    A failed enqueue for one user never touches the caller's transaction or
    other users' notifications.
    """

    def __init__(self, session_factory, email_sender=None):
        self._session_factory = session_factory
        if email_sender is None and get_settings().notify_by_email:
            from app.services.email import send_notification_email

            email_sender = send_notification_email
        self._email_sender = email_sender

    async def notify(self, user_id: str, payload: NotificationPayload) -> bool:
        try:
            async with self._session_factory() as db:
                user = await db.get(User, user_id)
                if user is None:
                    logger.warning(f"Notification skipped: user {user_id} not found")
                    return False
                db.add(Notification(
                    user_id=user_id,
                    title=payload.title,
                    description=payload.message,
                    priority=payload.priority,
                    link_to=payload.link,
                ))
                await db.commit()
                email = user.email
        except Exception as e:
            logger.warning(f"Failed to notify user {user_id}: {e}")
            return False

        if self._email_sender and email:
            # In-app row is already committed; mail is best effort on top of it.
            try:
                await self._email_sender(email, payload.title, payload.message, payload.link)
            except Exception as e:
                logger.warning(f"Email to user {user_id} failed: {e}")
        return True
