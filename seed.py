import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import Category, CategoryType


logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = (
    ("Office Supplies", "package", "#2ECC71"),
    ("Travel", "plane", "#3498DB"),
    ("Software/Subscriptions", "monitor", "#9B59B6"),
    ("Marketing", "megaphone", "#E74C3C"),
    ("Utilities", "zap", "#F39C12"),
    ("Meals", "utensils", "#1ABC9C"),
    ("Equipment", "laptop", "#34495E"),
    ("Other", "folder", "#95A5A6"),
)


def seed_default_categories(session: Session) -> int:
    """Create missing default expense categories. Safe to run repeatedly."""
    created = 0
    for name, icon, color in DEFAULT_CATEGORIES:
        existing = session.scalar(
            select(Category).where(
                Category.type == CategoryType.expense,
                func.lower(Category.name) == name.lower(),
            )
        )
        if existing:
            continue
        session.add(
            Category(
                name=name,
                type=CategoryType.expense,
                icon=icon,
                color=color,
                is_default=True,
            )
        )
        created += 1
    session.flush()
    if created:
        logger.info(f"seed_categories: created={created}")
    return created
