"""
Retention policy for backup artifacts.

Artifacts are laid out identically in every storage backend:
{prefix}/{database}/{YYYY-MM-DD}/{filename}

The date segment is the upload date. An artifact is expired when its date
is strictly before today - retention_days; an artifact dated exactly on the
cutoff is kept. Dates are calendar dates from the local clock.
"""

import os
from datetime import date, datetime, timedelta
from typing import Optional


DATE_FORMAT = '%Y-%m-%d'


def normalize_prefix(prefix: str) -> str:
    """Strip leading and trailing '/' so keys stay relative to the storage root."""
    return prefix.strip('/')


def build_storage_key(prefix: str, database_name: str, filename: str, today: Optional[date] = None) -> str:
    """
    Build the storage key for an artifact.

    Args:
        prefix: Logical namespace (backup_prefix)
        database_name: Name of the dumped database
        filename: Basename of the artifact
        today: Date segment to use (default: date.today())

    Returns:
        '{prefix}/{database_name}/{YYYY-MM-DD}/{filename}', without the prefix
        segment when the prefix is empty
    """
    if today is None:
        today = date.today()
    segments = [normalize_prefix(prefix), database_name, today.strftime(DATE_FORMAT), os.path.basename(filename)]
    return '/'.join(segment for segment in segments if segment)


def parse_artifact_date(segment: str) -> Optional[date]:
    """
    Parse a YYYY-MM-DD path segment.

    Returns:
        The calendar date, or None if the segment is not a valid date
    """
    if len(segment) != 10 or segment.count('-') != 2:
        return None

    try:
        return datetime.strptime(segment, DATE_FORMAT).date()
    except ValueError:
        return None


def date_from_key(key: str, prefix: str) -> Optional[date]:
    """
    Extract the date segment from a '{prefix}/{database}/{date}/{file}' key.

    Args:
        key: Full storage key
        prefix: Prefix the key was listed under (may itself contain '/')

    Returns:
        The date, or None if the key does not have the expected shape
    """
    root = normalize_prefix(prefix)
    if root:
        root += '/'
    if not key.startswith(root):
        return None

    parts = key[len(root):].split('/')
    if len(parts) != 3 or not all(parts):
        return None
    return parse_artifact_date(parts[1])


class RetentionPolicy:
    """
    Keep/delete decision for dated artifacts.

    The cutoff is computed once, when the policy is created, so a single
    sweep uses one consistent boundary.
    """

    def __init__(self, retention_days: int, today: Optional[date] = None):
        """
        Args:
            retention_days: Number of days to keep artifacts
            today: Reference date (default: date.today())
        """
        if retention_days < 0:
            raise ValueError(f"retention_days must not be negative: {retention_days}")

        self.retention_days = retention_days
        self.today = today or date.today()
        self.cutoff = self.today - timedelta(days=retention_days)

    def is_expired(self, artifact_date: date) -> bool:
        """True if the artifact date is strictly before the cutoff."""
        return artifact_date < self.cutoff

    def is_key_expired(self, key: str, prefix: str) -> Optional[bool]:
        """
        Decide expiry for a storage key.

        Returns:
            True/False, or None if the key has no parseable date segment
        """
        artifact_date = date_from_key(key, prefix)
        if artifact_date is None:
            return None
        return self.is_expired(artifact_date)

    def __repr__(self):
        return f'<RetentionPolicy days={self.retention_days} cutoff={self.cutoff.isoformat()}>'
