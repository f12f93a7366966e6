"""
Exporter - turns an owner and backup type into a versioned BackupData bundle.

Domain data comes from an injected provider, one call per section:

    provider.provide_section(owner_id, section_name, scope_options) -> records

A plain callable with the same signature is accepted too. The exporter never
talks to storage.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Any, Dict, List, Optional

from .codec import BackupData, SCHEMA_VERSION
from .errors import ExportError, ExportTimeoutError

logger = logging.getLogger(__name__)


# backup_type -> (scope, sections)
DEFAULT_BACKUP_TYPES = {
    'full': ('full', ['profile', 'appointments', 'prescriptions', 'records', 'payments', 'settings']),
    'tenant-subset': ('tenant-subset', ['profile', 'appointments', 'records', 'settings']),
    'user-subset': ('user-subset', ['profile', 'appointments', 'prescriptions', 'payments']),
}


class DomainDataProvider:
    """Interface implemented by the surrounding application."""

    def provide_section(self, owner_id: str, section_name: str, scope_options: Dict[str, Any]):
        raise NotImplementedError


class Exporter:
    """
    Builds backup bundles by calling the domain data provider per section.
    """

    def __init__(self, provider, backup_types: Dict[str, tuple] = None, timeout: Optional[float] = 60):
        """
        Initialize exporter.

        Args:
            provider: DomainDataProvider or callable(owner_id, section_name, scope_options)
            backup_types: Mapping of backup_type to (scope, [section names])
            timeout: Seconds allowed per section call (None disables the limit)
        """
        if provider is None:
            raise ValueError("A domain data provider is required")

        if hasattr(provider, 'provide_section'):
            self._provide = provider.provide_section
        elif callable(provider):
            self._provide = provider
        else:
            raise TypeError("provider must implement provide_section() or be callable")

        self.backup_types = backup_types or DEFAULT_BACKUP_TYPES
        self.timeout = timeout

    def sections_for(self, backup_type: str) -> List[str]:
        return list(self._resolve_type(backup_type)[1])

    def export(
        self,
        owner_id: str,
        backup_type: str,
        scope_options: Optional[Dict[str, Any]] = None,
        generated_at: Optional[datetime] = None,
    ) -> BackupData:
        """
        Export a bundle for an owner.

        Args:
            owner_id: Tenant / owner identifier
            backup_type: Key of backup_types
            scope_options: Passed through to the provider (e.g. secondary_owner_id)
            generated_at: Timestamp for the bundle (defaults to utcnow)

        Returns:
            BackupData with one entry per configured section

        Raises:
            ExportError: If any section provider raises
            ExportTimeoutError: If a section provider exceeds the timeout
        """
        scope_options = dict(scope_options or {})
        scope, section_names = self._resolve_type(backup_type)

        sections = {}
        for section_name in section_names:
            records = self._fetch_section(owner_id, section_name, scope_options)
            sections[section_name] = normalize_section(records)
            logger.debug(
                f"Exported section {section_name} for owner {owner_id}: "
                f"{len(sections[section_name]) if isinstance(sections[section_name], list) else 1} records"
            )

        return BackupData(
            scope=scope,
            subject_id=owner_id,
            backup_type=backup_type,
            generated_at=generated_at or datetime.utcnow(),
            schema_version=SCHEMA_VERSION,
            secondary_owner_id=scope_options.get('secondary_owner_id'),
            sections=sections,
        )

    def _resolve_type(self, backup_type: str):
        if backup_type not in self.backup_types:
            raise ExportError(
                f"Unknown backup type: {backup_type}. "
                f"Must be one of: {', '.join(sorted(self.backup_types))}"
            )
        return self.backup_types[backup_type]

    def _fetch_section(self, owner_id: str, section_name: str, scope_options: Dict[str, Any]):
        if self.timeout is None:
            return self._call_provider(owner_id, section_name, scope_options)

        # The worker thread is abandoned on timeout; the provider has no side effects
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='vaultsync-export')
        try:
            future = pool.submit(self._call_provider, owner_id, section_name, scope_options)
            try:
                return future.result(timeout=self.timeout)
            except FutureTimeoutError:
                raise ExportTimeoutError(
                    f"Section '{section_name}' timed out after {self.timeout}s"
                )
        finally:
            pool.shutdown(wait=False)

    def _call_provider(self, owner_id: str, section_name: str, scope_options: Dict[str, Any]):
        try:
            return self._provide(owner_id, section_name, dict(scope_options))
        except ExportError:
            raise
        except Exception as e:
            raise ExportError(f"Section '{section_name}' failed to export: {e}")


def normalize_section(records):
    """
    Normalize provider output for deterministic serialization.

    None becomes an empty list; lists are stably sorted by (created_at, id)
    so re-exporting unchanged data yields byte-identical bundles.
    """
    if records is None:
        return []

    if isinstance(records, dict):
        return records

    records = list(records)
    if all(isinstance(record, dict) for record in records):
        return sorted(records, key=_record_sort_key)
    return records


def _record_sort_key(record: Dict[str, Any]):
    created_at = record.get('created_at')
    return ('' if created_at is None else str(created_at), _id_sort_key(record.get('id')))


def _id_sort_key(record_id):
    # Numeric ids sort numerically and ahead of string ids
    if isinstance(record_id, (int, float)) and not isinstance(record_id, bool):
        return (0, record_id, '')
    return (1, 0, '' if record_id is None else str(record_id))
