from datetime import datetime
from typing import Dict, List, Optional
from sqlalchemy import func
from extensions import db
from logger import ledger_logger as logger
from models import Task, AvailableTask, TaskType
from earnings.config import LedgerConfig
from earnings.exceptions import OnCooldown, WeeklyLimitReached, TaskNotFound, ValidationError
from earnings.ledger import LedgerStore
from utils import utcnow


class TaskEligibilityEngine:
    """
    Decides whether a user may complete a task type now.

    1. Cooldown: a type is blocked for TASK_COOLDOWN_DAYS after its latest completion.
       The cooldown is per type, so any ad task cools down every ad task.
    2. Weekly cap: at most TASK_WEEKLY_CAP completions of a type in a rolling
       TASK_WEEKLY_WINDOW_DAYS window.
    3. A user with no completions of any type is exempt for that first completion.
    """

    @staticmethod
    def list_available_tasks(task_type: Optional[str] = None) -> List[AvailableTask]:
        query = AvailableTask.query.filter_by(is_active=True)
        if task_type:
            query = query.filter_by(type=task_type)
        return query.order_by(AvailableTask.type, AvailableTask.id).all()

    @staticmethod
    def _completion_count(user_id: int) -> int:
        return db.session.query(func.count(Task.id)).filter(Task.user_id == user_id).scalar() or 0

    @staticmethod
    def _completions_of_type(user_id: int, task_type: str, since: datetime) -> List[datetime]:
        rows = db.session.query(Task.completed_at).filter(
            Task.user_id == user_id,
            Task.type == task_type,
            Task.completed_at > since
        ).order_by(Task.completed_at.asc()).all()
        return [row[0] for row in rows]

    @staticmethod
    def _latest_completion(user_id: int, task_type: str) -> Optional[datetime]:
        return db.session.query(func.max(Task.completed_at)).filter(
            Task.user_id == user_id,
            Task.type == task_type
        ).scalar()

    @staticmethod
    def check_eligibility(user_id: int, task_type: str, now: Optional[datetime] = None) -> None:
        """Raise OnCooldown / WeeklyLimitReached when the rules forbid a completion."""
        if task_type not in TaskType.values():
            raise ValidationError(f"Unknown task type '{task_type}'")
        now = now or utcnow()

        if TaskEligibilityEngine._completion_count(user_id) == 0:
            return

        latest = TaskEligibilityEngine._latest_completion(user_id, task_type)
        if latest is not None:
            available_at = latest + LedgerConfig.task_cooldown()
            if now < available_at:
                raise OnCooldown(
                    f"You can complete another {task_type} task after {available_at:%Y-%m-%d %H:%M} UTC",
                    available_at=available_at.isoformat(),
                )

        cap = LedgerConfig.task_weekly_cap()
        window = LedgerConfig.task_window()
        recent = TaskEligibilityEngine._completions_of_type(user_id, task_type, now - window)
        if len(recent) >= cap:
            # A slot opens once enough completions age out of the window
            available_at = recent[len(recent) - cap] + window
            raise WeeklyLimitReached(
                f"You've reached the maximum of {cap} {task_type} tasks this week",
                available_at=available_at.isoformat(),
            )

    @staticmethod
    def complete_task(user_id: int, available_task_id: int) -> int:
        """Record a completion and post its reward. Returns the Earning id."""
        try:
            # Serialize completions per user so the cap check sees a consistent snapshot
            LedgerStore.lock_user(user_id)

            catalog_task = db.session.get(AvailableTask, available_task_id)
            if not catalog_task or not catalog_task.is_active:
                raise TaskNotFound()

            now = utcnow()
            TaskEligibilityEngine.check_eligibility(user_id, catalog_task.type, now=now)

            earning_id = LedgerStore.post_earning(
                user_id,
                catalog_task.type,
                catalog_task.reward,
                f"Completed {catalog_task.type} task: {catalog_task.description}",
            )
            db.session.add(Task(
                user_id=user_id,
                available_task_id=catalog_task.id,
                type=catalog_task.type,
                reward=catalog_task.reward,
                completed_at=now,
            ))
            db.session.commit()

        except Exception:
            db.session.rollback()
            raise

        logger.info(f"User {user_id} completed task {available_task_id} ({catalog_task.type}), earning {earning_id}")
        return earning_id

    @staticmethod
    def task_status(user_id: int, now: Optional[datetime] = None) -> Dict[str, Dict]:
        """Per-type view for the task page: weekly usage and cooldown end."""
        now = now or utcnow()
        cap = LedgerConfig.task_weekly_cap()
        window = LedgerConfig.task_window()
        first_completion_pending = TaskEligibilityEngine._completion_count(user_id) == 0

        status = {}
        for task_type in TaskType.values():
            recent = TaskEligibilityEngine._completions_of_type(user_id, task_type, now - window)
            latest = TaskEligibilityEngine._latest_completion(user_id, task_type)
            cooldown_ends = latest + LedgerConfig.task_cooldown() if latest else None
            on_cooldown = bool(cooldown_ends and now < cooldown_ends)
            status[task_type] = {
                "completedThisWeek": len(recent),
                "remainingThisWeek": max(cap - len(recent), 0),
                "onCooldown": on_cooldown,
                "cooldownEndsAt": cooldown_ends.isoformat() if on_cooldown else None,
                "canComplete": first_completion_pending or (not on_cooldown and len(recent) < cap),
            }
        return status

    @staticmethod
    def list_completed(user_id: int, task_type: Optional[str] = None) -> List[Task]:
        query = Task.query.filter_by(user_id=user_id)
        if task_type:
            query = query.filter_by(type=task_type)
        return query.order_by(Task.completed_at.desc()).all()
