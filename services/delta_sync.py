"""
Delta Sync Service: content hashes per exported row so a profile only
exports rows that are new or changed since the last successful delivery.

Hashes are computed in process_delta but only written by commit_delta_sync,
which the pipeline calls after the data reached its destination.
"""
import base64
import hashlib
import logging
import unicodedata
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List

from core.timeutil import utcnow
from dataexport.collaborators import DeltaSyncResult
from dataexport.database import SessionLocal
from dataexport.models import DeltaSyncState
from dataexport.processing import find_column

logger = logging.getLogger(__name__)

NUMERIC_PRECISION = 6


def normalize_value(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (float, Decimal)):
        return f"{round(float(value), NUMERIC_PRECISION):.{NUMERIC_PRECISION}f}"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, str):
        return unicodedata.normalize("NFC", value).lstrip("\ufeff")
    return str(value)


def row_hash(row: Dict[str, Any], reef_id: str) -> str:
    """SHA-256 over the reef id and every column in sorted key order."""
    parts = [f"REEFID:{reef_id}|"]
    for key in sorted(row.keys()):
        parts.append(f"{key}={normalize_value(row[key])};")
    return hashlib.sha256("".join(parts).encode("utf-8")).hexdigest()


class HashDeltaSync:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def previous_hashes(self, profile_id: int) -> Dict[str, str]:
        session = self.session_factory()
        try:
            states = session.query(DeltaSyncState).filter(
                DeltaSyncState.profile_id == profile_id,
                DeltaSyncState.is_deleted == False,
            ).all()
            return {s.reef_id: s.row_hash for s in states}
        finally:
            session.close()

    def process_delta(self, profile_id: int, rows: List[Dict[str, Any]], profile) -> DeltaSyncResult:
        column = profile.delta_sync_reef_id_column
        missing = [r for r in rows if find_column(r, column) is None or r[find_column(r, column)] is None]
        if missing:
            raise ValueError(f"Delta sync failed: {len(missing)} rows have NULL ReefId values")

        previous = self.previous_hashes(profile_id)
        result = DeltaSyncResult(total_rows=len(rows))
        for row in rows:
            reef_id = str(row[find_column(row, column)]).strip()
            if reef_id in result.new_hashes:
                logger.warning("[DELTA] Duplicate ReefId '%s' in profile %s, keeping first row", reef_id, profile_id)
                continue
            digest = row_hash(row, reef_id)
            result.new_hashes[reef_id] = digest

            if reef_id not in previous:
                result.new_rows.append(row)
            elif previous[reef_id] != digest:
                result.changed_rows.append(row)
            else:
                result.unchanged_rows.append(row)

        result.deleted_reef_ids = sorted(set(previous) - set(result.new_hashes))
        logger.info(
            "[DELTA] Profile %s: %d new, %d changed, %d deleted, %d unchanged (not committed)",
            profile_id, len(result.new_rows), len(result.changed_rows),
            len(result.deleted_reef_ids), len(result.unchanged_rows),
        )
        return result

    def commit_delta_sync(self, profile_id: int, execution_id: int, result: DeltaSyncResult):
        """Upsert the hashes of this run and mark vanished rows deleted."""
        now = utcnow()
        session = self.session_factory()
        try:
            existing = {
                s.reef_id: s for s in session.query(DeltaSyncState).filter(
                    DeltaSyncState.profile_id == profile_id
                ).all()
            }
            for reef_id, digest in result.new_hashes.items():
                state = existing.get(reef_id)
                if state is None:
                    session.add(DeltaSyncState(
                        profile_id=profile_id,
                        reef_id=reef_id,
                        row_hash=digest,
                        last_seen_execution_id=execution_id,
                        first_seen_at=now,
                        last_seen_at=now,
                    ))
                else:
                    state.row_hash = digest
                    state.last_seen_execution_id = execution_id
                    state.last_seen_at = now
                    state.is_deleted = False
                    state.deleted_at = None

            for reef_id in result.deleted_reef_ids:
                state = existing.get(reef_id)
                if state is not None and not state.is_deleted:
                    state.is_deleted = True
                    state.deleted_at = now
                    state.last_seen_execution_id = execution_id

            session.commit()
            logger.info(
                "[DELTA] Committed %d hashes, %d deletions for profile %s (execution %s)",
                len(result.new_hashes), len(result.deleted_reef_ids), profile_id, execution_id,
            )
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def cleanup_old_state(self, profile_id: int, retention_days: int) -> int:
        """Forget deleted rows last seen more than `retention_days` ago."""
        cutoff = utcnow() - timedelta(days=retention_days)
        session = self.session_factory()
        try:
            deleted = session.query(DeltaSyncState).filter(
                DeltaSyncState.profile_id == profile_id,
                DeltaSyncState.is_deleted == True,
                DeltaSyncState.last_seen_at < cutoff,
            ).delete(synchronize_session=False)
            session.commit()
            if deleted:
                logger.info("[DELTA] Removed %d expired deleted rows for profile %s", deleted, profile_id)
            return deleted
        finally:
            session.close()

    def reset(self, profile_id: int) -> int:
        """Drop all stored state so the next run exports every row again."""
        session = self.session_factory()
        try:
            deleted = session.query(DeltaSyncState).filter(
                DeltaSyncState.profile_id == profile_id
            ).delete(synchronize_session=False)
            session.commit()
            return deleted
        finally:
            session.close()
