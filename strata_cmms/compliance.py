# strata_cmms/compliance.py
"""Expiry-based compliance status for assets and contractors.

The status is never stored: every read recomputes it from the subject's
tracked dates against an explicit ``now``.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from .app_logger import get_logger
from .models import ComplianceStatus, parse_date

logger = get_logger("compliance")

DEFAULT_SOON_WINDOW_DAYS = 30
ALERT_THRESHOLDS = (90, 60, 30)
ALERT_BAND_DAYS = 7

# field -> label, in display order
ASSET_EXPIRY_FIELDS = {
    "next_service_date": "Service Due",
}
CONTRACTOR_EXPIRY_FIELDS = {
    "license_expiry_date": "License",
    "insurance_expiry": "Insurance",
    "work_cover_expiry_date": "Work Cover",
    "public_liability_expiry_date": "Public Liability",
}


def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    return value


def classify(dates, now, soon_window_days=DEFAULT_SOON_WINDOW_DAYS):
    """Worst-of-N status: any expired date beats any expiring date beats compliant.

    ``None`` entries are untracked; no tracked dates at all is ``unknown``.
    """
    now = _as_date(now)
    tracked = [_as_date(d) for d in dates if d is not None]
    if not tracked:
        return ComplianceStatus.UNKNOWN
    if any(d < now for d in tracked):
        return ComplianceStatus.NON_COMPLIANT
    horizon = now + timedelta(days=soon_window_days)
    if any(now <= d <= horizon for d in tracked):
        return ComplianceStatus.EXPIRING_SOON
    return ComplianceStatus.COMPLIANT


@dataclass
class ComplianceSubject:
    kind: str
    id: Optional[int]
    name: str
    dates: Dict[str, Optional[date]] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class ExpiryAlert:
    field: str
    label: str
    expiry_date: date
    days_until_expiry: int
    is_expired: bool
    threshold: int

    def to_dict(self):
        return {
            "field": self.field,
            "label": self.label,
            "expiry_date": self.expiry_date.isoformat(),
            "days_until_expiry": self.days_until_expiry,
            "is_expired": self.is_expired,
            "threshold": self.threshold,
        }


def _lenient_date(record, key):
    try:
        return parse_date(record.get(key))
    except ValueError:
        logger.debug("Ignoring malformed %s=%r on record %s", key, record.get(key), record.get("id"))
        return None


def _subject(kind, record, name, fields):
    return ComplianceSubject(
        kind=kind,
        id=record.get("id"),
        name=name or "",
        dates={k: _lenient_date(record, k) for k in fields},
        labels=dict(fields),
    )


def subject_from_asset(record):
    return _subject("asset", record, record.get("name"), ASSET_EXPIRY_FIELDS)


def subject_from_contractor(record):
    return _subject("contractor", record, record.get("company_name"), CONTRACTOR_EXPIRY_FIELDS)


def classify_subject(subject, now, soon_window_days=DEFAULT_SOON_WINDOW_DAYS):
    return classify(list(subject.dates.values()), now, soon_window_days)


def expiry_alerts(subject, now, thresholds=ALERT_THRESHOLDS, band_days=ALERT_BAND_DAYS):
    """Reminder candidates for a subject.

    A date matches the first threshold ``t`` with ``t - band_days <= days <= t``.
    Expired dates always match threshold 0. Dates matching nothing are skipped.
    """
    now = _as_date(now)
    alerts: List[ExpiryAlert] = []
    for key, expiry in subject.dates.items():
        if expiry is None:
            continue
        days = (_as_date(expiry) - now).days
        if days < 0:
            threshold = 0
        else:
            threshold = next((t for t in thresholds if t - band_days <= days <= t), None)
            if threshold is None:
                continue
        alerts.append(ExpiryAlert(
            field=key,
            label=subject.labels.get(key, key),
            expiry_date=_as_date(expiry),
            days_until_expiry=days,
            is_expired=days < 0,
            threshold=threshold,
        ))
    return alerts
