# coding: utf-8
"""
Admin task queue

Escalation records for cases automation must not guess at. This subsystem
only creates and auto-completes tasks; support tooling reads them.

Creation is idempotent: at most one open task per (category, entity). A
repeated escalation refreshes the open task's notes and due date instead of
adding a new row. The partial unique index on admin_tasks backs this up
across instances.
"""
from datetime import datetime, UTC
from typing import List, Optional, Tuple

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paycycle.core.enums import AdminTaskCategory, AdminTaskPriority
from paycycle.database.models import AdminTask


def subscription_entity(subscription_id: int) -> str:
    return f"subscription:{subscription_id}"


def payment_entity(provider_payment_id: str) -> str:
    return f"payment:{provider_payment_id}"


class AdminTaskService:
    """Create, refresh and auto-complete admin tasks"""

    @staticmethod
    async def get_open_task(
        session: AsyncSession,
        category: AdminTaskCategory,
        entity_key: str,
    ) -> Optional[AdminTask]:
        stmt = select(AdminTask).where(
            AdminTask.category == category.value,
            AdminTask.entity_key == entity_key,
            AdminTask.completed_at.is_(None),
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def ensure_task(
        session: AsyncSession,
        category: AdminTaskCategory,
        entity_key: str,
        title: str,
        task_type: str = "renewal",
        priority: AdminTaskPriority = AdminTaskPriority.MEDIUM,
        notes: Optional[str] = None,
        due_at: Optional[datetime] = None,
        subscription_id: Optional[int] = None,
        order_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> Tuple[AdminTask, bool]:
        """
        Open a task, or refresh the one already open for this category/entity

        Flushes but does not commit: the caller commits together with the
        state change that caused the escalation.

        Returns:
            (task, created)
        """
        existing = await AdminTaskService.get_open_task(session, category, entity_key)
        if existing:
            if notes:
                existing.notes = notes
            if due_at:
                existing.due_at = due_at
            existing.updated_at = datetime.now(UTC)
            await session.flush()
            logger.debug(f"Admin task refreshed: {category.value} {entity_key} (#{existing.id})")
            return existing, False

        task = AdminTask(
            task_type=task_type,
            category=category.value,
            priority=priority.value,
            entity_key=entity_key,
            subscription_id=subscription_id,
            order_id=order_id,
            user_id=user_id,
            title=title,
            notes=notes,
            due_at=due_at,
        )
        try:
            # Savepoint: a lost race must not discard the caller's pending changes
            async with session.begin_nested():
                session.add(task)
                await session.flush()
        except IntegrityError:
            # Another instance opened the same task between our select and insert
            existing = await AdminTaskService.get_open_task(session, category, entity_key)
            if existing is None:
                raise
            return existing, False

        logger.info(f"📋 Admin task opened: {category.value} for {entity_key} (priority={priority.value})")
        return task, True

    @staticmethod
    async def complete_task(
        session: AsyncSession,
        category: AdminTaskCategory,
        entity_key: str,
        completed_by: str = "system",
    ) -> bool:
        """Close the open task for category/entity, if any (flush only)"""
        task = await AdminTaskService.get_open_task(session, category, entity_key)
        if task is None:
            return False
        task.completed_at = datetime.now(UTC)
        task.completed_by = completed_by
        await session.flush()
        logger.info(f"✅ Admin task completed: {category.value} for {entity_key} by {completed_by}")
        return True

    @staticmethod
    async def list_open(
        session: AsyncSession,
        category: Optional[AdminTaskCategory] = None,
        entity_key: Optional[str] = None,
        limit: int = 100,
    ) -> List[AdminTask]:
        stmt = select(AdminTask).where(AdminTask.completed_at.is_(None))
        if category is not None:
            stmt = stmt.where(AdminTask.category == category.value)
        if entity_key is not None:
            stmt = stmt.where(AdminTask.entity_key == entity_key)
        stmt = stmt.order_by(AdminTask.created_at, AdminTask.id).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())
