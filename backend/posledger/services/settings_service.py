from __future__ import annotations

from flask import current_app

from ..errors import ValidationError
from ..extensions import db
from ..models import SystemSetting


CATEGORY_CUSTOMER = "customer"
KEY_POINTS_CONVERSION_RATE = "points_conversion_rate"

# Seeded by `flask system init`
DEFAULT_SETTINGS = {
    (CATEGORY_CUSTOMER, KEY_POINTS_CONVERSION_RATE): "10000",
}


def get_setting(category: str, key: str, default: str | None = None) -> str | None:
    row = db.session.query(SystemSetting).filter_by(category=category, key=key).first()
    if row is None or row.value is None:
        return default
    return row.value


def set_setting(category: str, key: str, value: str | None) -> SystemSetting:
    """Upsert a setting. Does not commit."""
    if not category or not key:
        raise ValidationError("category and key are required")

    row = db.session.query(SystemSetting).filter_by(category=category, key=key).first()
    if row is None:
        row = SystemSetting(category=category, key=key, value=value)
        db.session.add(row)
    else:
        row.value = value
    db.session.flush()
    return row


def seed_default_settings() -> int:
    """Insert missing defaults. Returns how many rows were created. Does not commit."""
    created = 0
    for (category, key), value in DEFAULT_SETTINGS.items():
        exists = db.session.query(SystemSetting.id).filter_by(category=category, key=key).first()
        if not exists:
            db.session.add(SystemSetting(category=category, key=key, value=value))
            created += 1
    db.session.flush()
    return created


def points_conversion_rate() -> int:
    """
    Currency units per loyalty point.

    The stored setting wins over POINTS_CONVERSION_RATE in the app config.
    Unparseable or non-positive stored values fall back to the config.
    """
    fallback = int(current_app.config.get("POINTS_CONVERSION_RATE", 10000))
    raw = get_setting(CATEGORY_CUSTOMER, KEY_POINTS_CONVERSION_RATE)
    if raw is None:
        return fallback
    try:
        rate = int(str(raw).strip())
    except ValueError:
        current_app.logger.warning("Ignoring invalid points_conversion_rate setting: %r", raw)
        return fallback
    return rate if rate > 0 else fallback
