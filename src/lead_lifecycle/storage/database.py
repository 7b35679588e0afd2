"""SQLite storage for leads, scores, enrollments and routing."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Dict, Any, Generator, Set

from .models import (
    Lead,
    LeadSnapshot,
    ScoringModel,
    ScoreRecord,
    ScorePrediction,
    Enrollment,
    EnrollmentStatus,
    TransitionLogEntry,
    TriggerType,
    RequirementState,
    VerificationStatus,
    CommunicationRecord,
    RoutingAssignment,
    EXITED_STAGE,
    local_naive,
)
from ..errors import ConcurrentModification, DuplicateActiveEnrollment, ValidationError

logger = logging.getLogger(__name__)

# Communication channels counted as lead activities of another type
CHANNEL_ACTIVITY_TYPES = {
    "in_person": "meeting",
    "video": "meeting",
}


def _ts(value: Optional[datetime]) -> Optional[str]:
    return local_naive(value).isoformat() if value else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return local_naive(datetime.fromisoformat(value)) if value else None


class LifecycleDatabase:
    """SQLite database for the lead lifecycle engine.

    Every table carries ``tenant_id`` and every query filters on it.
    """

    def __init__(self, db_path: Optional[Path] = None, timeout: float = 30.0):
        """Initialize database connection."""
        if db_path is None:
            db_path = Path.home() / ".lead-lifecycle" / "lifecycle.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout

        self._init_db()

    @contextmanager
    def _get_connection(self, immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory.

        With ``immediate`` the write lock is taken up front, so read-then-write
        sequences inside the block are serialized against other writers.
        """
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode = WAL")

            # Leads and the records their features are computed from
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS leads (
                    tenant_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    first_name TEXT,
                    last_name TEXT,
                    email TEXT,
                    phone TEXT,
                    source TEXT,
                    utm_source TEXT,
                    utm_medium TEXT,
                    utm_campaign TEXT,
                    tags TEXT,
                    assigned_to TEXT,
                    re_enquiry_count INTEGER DEFAULT 0,
                    attributes_json TEXT,
                    created_at TEXT NOT NULL,
                    last_contacted_at TEXT,
                    PRIMARY KEY (tenant_id, id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS lead_activities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    activity_type TEXT NOT NULL,
                    occurred_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS lead_notes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS lead_documents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'submitted',
                    submitted_at TEXT NOT NULL
                )
            """)

            # Scoring models and the per-tenant active pointer
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS scoring_models (
                    tenant_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    kind TEXT NOT NULL DEFAULT 'rule_based',
                    weights_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, version)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS active_scoring_models (
                    tenant_id TEXT PRIMARY KEY,
                    model_version INTEGER NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL
                )
            """)

            # Score ledger
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS lead_scores (
                    tenant_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    score INTEGER NOT NULL,
                    tier TEXT NOT NULL,
                    breakdown_json TEXT NOT NULL,
                    model_version INTEGER,
                    computed_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, lead_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS score_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    score INTEGER NOT NULL,
                    tier TEXT NOT NULL,
                    breakdown_json TEXT NOT NULL,
                    model_version INTEGER,
                    computed_at TEXT NOT NULL,
                    UNIQUE (tenant_id, lead_id, computed_at)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS score_predictions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    model_version INTEGER,
                    score INTEGER NOT NULL,
                    tier TEXT NOT NULL,
                    predicted_at TEXT NOT NULL,
                    converted INTEGER,
                    outcome_recorded_at TEXT
                )
            """)

            # Enrollments
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS enrollments (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    journey_id TEXT NOT NULL,
                    journey_version INTEGER NOT NULL,
                    current_stage_index INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'active',
                    version INTEGER NOT NULL DEFAULT 0,
                    enrolled_at TEXT NOT NULL,
                    stage_entered_at TEXT NOT NULL,
                    ended_at TEXT,
                    exit_reason TEXT
                )
            """)

            # At most one active enrollment per lead and journey
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_enrollments_active
                ON enrollments(tenant_id, lead_id, journey_id)
                WHERE status = 'active'
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transition_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    enrollment_id TEXT NOT NULL,
                    from_stage TEXT,
                    to_stage TEXT,
                    trigger TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    note TEXT,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS requirement_status (
                    tenant_id TEXT NOT NULL,
                    enrollment_id TEXT NOT NULL,
                    requirement_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    updated_by TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, enrollment_id, requirement_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS stage_approvals (
                    tenant_id TEXT NOT NULL,
                    enrollment_id TEXT NOT NULL,
                    stage_index INTEGER NOT NULL,
                    approved_by TEXT NOT NULL,
                    note TEXT,
                    approved_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, enrollment_id, stage_index)
                )
            """)

            # Sent communications
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS communications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    enrollment_id TEXT,
                    channel TEXT NOT NULL,
                    action TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    sent_at TEXT NOT NULL
                )
            """)

            # Routing
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS routing_rules (
                    tenant_id TEXT NOT NULL,
                    id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 100,
                    conditions_json TEXT NOT NULL,
                    target TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS lead_assignments (
                    tenant_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    advisor_id TEXT NOT NULL,
                    rule_id TEXT NOT NULL,
                    assigned_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, lead_id)
                )
            """)

            # Indexes
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_activities_lead ON lead_activities(tenant_id, lead_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_notes_lead ON lead_notes(tenant_id, lead_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_documents_lead ON lead_documents(tenant_id, lead_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_history_lead ON score_history(tenant_id, lead_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_predictions_lead ON score_predictions(tenant_id, lead_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_enrollments_journey ON enrollments(tenant_id, journey_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_log_enrollment ON transition_log(tenant_id, enrollment_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_comms_lead ON communications(tenant_id, lead_id, sent_at)")

    # === LEADS ===

    def _row_to_lead(self, row: sqlite3.Row) -> Lead:
        """Convert database row to Lead object."""
        return Lead(
            id=row["id"],
            tenant_id=row["tenant_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            phone=row["phone"],
            source=row["source"],
            utm_source=row["utm_source"],
            utm_medium=row["utm_medium"],
            utm_campaign=row["utm_campaign"],
            tags=row["tags"],
            assigned_to=row["assigned_to"],
            re_enquiry_count=row["re_enquiry_count"] or 0,
            attributes_json=row["attributes_json"],
            created_at=_dt(row["created_at"]),
            last_contacted_at=_dt(row["last_contacted_at"]),
        )

    def upsert_lead(self, lead: Lead) -> Lead:
        """Insert a lead or replace its attributes."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO leads (
                    tenant_id, id, first_name, last_name, email, phone, source,
                    utm_source, utm_medium, utm_campaign, tags, assigned_to,
                    re_enquiry_count, attributes_json, created_at, last_contacted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, id) DO UPDATE SET
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    email = excluded.email,
                    phone = excluded.phone,
                    source = excluded.source,
                    utm_source = excluded.utm_source,
                    utm_medium = excluded.utm_medium,
                    utm_campaign = excluded.utm_campaign,
                    tags = excluded.tags,
                    assigned_to = excluded.assigned_to,
                    re_enquiry_count = excluded.re_enquiry_count,
                    attributes_json = excluded.attributes_json,
                    last_contacted_at = excluded.last_contacted_at
            """, (
                lead.tenant_id, lead.id, lead.first_name, lead.last_name, lead.email,
                lead.phone, lead.source, lead.utm_source, lead.utm_medium, lead.utm_campaign,
                lead.tags, lead.assigned_to, lead.re_enquiry_count, lead.attributes_json,
                _ts(lead.created_at), _ts(lead.last_contacted_at),
            ))
        return lead

    def get_lead(self, tenant_id: str, lead_id: str) -> Optional[Lead]:
        """Get a lead by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM leads WHERE tenant_id = ? AND id = ?", (tenant_id, lead_id)
            ).fetchone()
            return self._row_to_lead(row) if row else None

    def list_leads(self, tenant_id: str) -> List[Lead]:
        """Get all of a tenant's leads, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM leads WHERE tenant_id = ? ORDER BY created_at, id", (tenant_id,)
            ).fetchall()
            return [self._row_to_lead(row) for row in rows]

    def add_activity(self, tenant_id: str, lead_id: str, activity_type: str,
                     occurred_at: Optional[datetime] = None):
        """Record a lead activity (call, meeting, email, form_submission...)."""
        occurred_at = occurred_at or datetime.now()
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO lead_activities (tenant_id, lead_id, activity_type, occurred_at)
                VALUES (?, ?, ?, ?)
            """, (tenant_id, lead_id, activity_type, _ts(occurred_at)))

    def add_note(self, tenant_id: str, lead_id: str, content: str):
        """Attach an advisor note to a lead."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO lead_notes (tenant_id, lead_id, content, created_at)
                VALUES (?, ?, ?, ?)
            """, (tenant_id, lead_id, content, _ts(datetime.now())))

    def add_document(self, tenant_id: str, lead_id: str, name: str, status: str = "submitted"):
        """Record a document a lead submitted."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO lead_documents (tenant_id, lead_id, name, status, submitted_at)
                VALUES (?, ?, ?, ?, ?)
            """, (tenant_id, lead_id, name, status, _ts(datetime.now())))

    def get_lead_snapshot(self, tenant_id: str, lead_id: str) -> Optional[LeadSnapshot]:
        """Read a lead and its related counts in one consistent pass."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM leads WHERE tenant_id = ? AND id = ?", (tenant_id, lead_id)
            ).fetchone()
            if row is None:
                return None
            lead = self._row_to_lead(row)

            counts: Dict[str, int] = {}
            for r in conn.execute("""
                SELECT activity_type, COUNT(*) AS n FROM lead_activities
                WHERE tenant_id = ? AND lead_id = ? GROUP BY activity_type
            """, (tenant_id, lead_id)):
                counts[r["activity_type"]] = counts.get(r["activity_type"], 0) + r["n"]
            for r in conn.execute("""
                SELECT channel, COUNT(*) AS n FROM communications
                WHERE tenant_id = ? AND lead_id = ? GROUP BY channel
            """, (tenant_id, lead_id)):
                activity_type = CHANNEL_ACTIVITY_TYPES.get(r["channel"], r["channel"])
                counts[activity_type] = counts.get(activity_type, 0) + r["n"]

            note_count = conn.execute(
                "SELECT COUNT(*) FROM lead_notes WHERE tenant_id = ? AND lead_id = ?",
                (tenant_id, lead_id)
            ).fetchone()[0]

            docs = conn.execute("""
                SELECT COUNT(*) AS submitted,
                       SUM(CASE WHEN status = 'approved' THEN 1 ELSE 0 END) AS approved
                FROM lead_documents WHERE tenant_id = ? AND lead_id = ?
            """, (tenant_id, lead_id)).fetchone()

            assignment = conn.execute(
                "SELECT advisor_id FROM lead_assignments WHERE tenant_id = ? AND lead_id = ?",
                (tenant_id, lead_id)
            ).fetchone()

        attributes: Dict[str, Any] = {}
        if lead.attributes_json:
            try:
                attributes = json.loads(lead.attributes_json)
            except ValueError:
                logger.warning(f"Ignoring malformed attributes on lead {lead_id}")

        return LeadSnapshot(
            lead_id=lead.id,
            tenant_id=lead.tenant_id,
            email=lead.email,
            phone=lead.phone,
            source=lead.source,
            utm_source=lead.utm_source,
            utm_medium=lead.utm_medium,
            utm_campaign=lead.utm_campaign,
            tags=tuple(lead.get_tags_list()),
            note_count=note_count,
            assigned_to=lead.assigned_to or (assignment["advisor_id"] if assignment else None),
            re_enquiry_count=lead.re_enquiry_count,
            created_at=lead.created_at,
            last_contacted_at=lead.last_contacted_at,
            communication_counts=tuple(sorted(counts.items())),
            documents_submitted=docs["submitted"] or 0,
            documents_approved=docs["approved"] or 0,
            attributes=tuple(sorted(attributes.items())),
        )

    # === SCORING MODELS ===

    def _row_to_model(self, row: sqlite3.Row, active_version: Optional[int]) -> ScoringModel:
        return ScoringModel(
            tenant_id=row["tenant_id"],
            version=row["version"],
            weights=json.loads(row["weights_json"]),
            kind=row["kind"],
            is_active=row["version"] == active_version,
            created_at=_dt(row["created_at"]),
        )

    def create_scoring_model(self, tenant_id: str, weights: Dict[str, float],
                             kind: str = "rule_based", activate: bool = False) -> ScoringModel:
        """Store a new model version (one above the tenant's latest)."""
        now = datetime.now()
        with self._get_connection(immediate=True) as conn:
            version = conn.execute(
                "SELECT COALESCE(MAX(version), 0) + 1 FROM scoring_models WHERE tenant_id = ?",
                (tenant_id,)
            ).fetchone()[0]
            conn.execute("""
                INSERT INTO scoring_models (tenant_id, version, kind, weights_json, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (tenant_id, version, kind, json.dumps(weights), _ts(now)))
            if activate:
                self._set_active_pointer(conn, tenant_id, version, now)

        logger.info(f"Created scoring model v{version} for tenant {tenant_id}")
        return ScoringModel(tenant_id=tenant_id, version=version, weights=dict(weights),
                            kind=kind, is_active=activate, created_at=now)

    def _set_active_pointer(self, conn: sqlite3.Connection, tenant_id: str, version: int, now: datetime):
        conn.execute("""
            INSERT INTO active_scoring_models (tenant_id, model_version, revision, updated_at)
            VALUES (?, ?, 1, ?)
            ON CONFLICT(tenant_id) DO UPDATE SET
                model_version = excluded.model_version,
                revision = active_scoring_models.revision + 1,
                updated_at = excluded.updated_at
        """, (tenant_id, version, _ts(now)))

    def activate_scoring_model(self, tenant_id: str, version: int) -> ScoringModel:
        """Point the tenant's active model at an existing version."""
        with self._get_connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM scoring_models WHERE tenant_id = ? AND version = ?",
                (tenant_id, version)
            ).fetchone()
            if row is None:
                raise ValidationError(f"Unknown scoring model version {version}")
            self._set_active_pointer(conn, tenant_id, version, datetime.now())

        logger.info(f"Activated scoring model v{version} for tenant {tenant_id}")
        return self._row_to_model(row, version)

    def get_active_model(self, tenant_id: str) -> Optional[ScoringModel]:
        """Get the tenant's active scoring model, if any."""
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT m.* FROM active_scoring_models a
                JOIN scoring_models m ON m.tenant_id = a.tenant_id AND m.version = a.model_version
                WHERE a.tenant_id = ?
            """, (tenant_id,)).fetchone()
            return self._row_to_model(row, row["version"]) if row else None

    def list_scoring_models(self, tenant_id: str) -> List[ScoringModel]:
        """All of a tenant's model versions, newest first."""
        with self._get_connection() as conn:
            pointer = conn.execute(
                "SELECT model_version FROM active_scoring_models WHERE tenant_id = ?", (tenant_id,)
            ).fetchone()
            active_version = pointer["model_version"] if pointer else None
            rows = conn.execute(
                "SELECT * FROM scoring_models WHERE tenant_id = ? ORDER BY version DESC", (tenant_id,)
            ).fetchall()
            return [self._row_to_model(row, active_version) for row in rows]

    # === SCORE LEDGER ===

    def _row_to_score(self, row: sqlite3.Row) -> ScoreRecord:
        return ScoreRecord(
            tenant_id=row["tenant_id"],
            lead_id=row["lead_id"],
            score=row["score"],
            tier=row["tier"],
            breakdown=json.loads(row["breakdown_json"]),
            model_version=row["model_version"],
            computed_at=_dt(row["computed_at"]),
        )

    def save_score(self, record: ScoreRecord) -> ScorePrediction:
        """Write the current score, a history row and a prediction row together."""
        breakdown_json = json.dumps(record.breakdown)
        computed_at = _ts(record.computed_at)
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO lead_scores (tenant_id, lead_id, score, tier, breakdown_json, model_version, computed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, lead_id) DO UPDATE SET
                    score = excluded.score,
                    tier = excluded.tier,
                    breakdown_json = excluded.breakdown_json,
                    model_version = excluded.model_version,
                    computed_at = excluded.computed_at
            """, (record.tenant_id, record.lead_id, record.score, record.tier,
                  breakdown_json, record.model_version, computed_at))

            # History rows are immutable; a repeat at the same instant is a no-op
            conn.execute("""
                INSERT OR IGNORE INTO score_history
                    (tenant_id, lead_id, score, tier, breakdown_json, model_version, computed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (record.tenant_id, record.lead_id, record.score, record.tier,
                  breakdown_json, record.model_version, computed_at))

            cursor = conn.execute("""
                INSERT INTO score_predictions (tenant_id, lead_id, model_version, score, tier, predicted_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (record.tenant_id, record.lead_id, record.model_version,
                  record.score, record.tier, computed_at))

        return ScorePrediction(
            id=cursor.lastrowid,
            tenant_id=record.tenant_id,
            lead_id=record.lead_id,
            model_version=record.model_version,
            score=record.score,
            tier=record.tier,
            predicted_at=record.computed_at,
        )

    def get_current_score(self, tenant_id: str, lead_id: str) -> Optional[ScoreRecord]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM lead_scores WHERE tenant_id = ? AND lead_id = ?", (tenant_id, lead_id)
            ).fetchone()
            return self._row_to_score(row) if row else None

    def get_score_history(self, tenant_id: str, lead_id: str, limit: int = 50) -> List[ScoreRecord]:
        """Score history for a lead, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM score_history
                WHERE tenant_id = ? AND lead_id = ?
                ORDER BY computed_at DESC, id DESC
                LIMIT ?
            """, (tenant_id, lead_id, limit)).fetchall()
            return [self._row_to_score(row) for row in rows]

    def record_outcome(self, tenant_id: str, lead_id: str, converted: bool,
                       recorded_at: Optional[datetime] = None) -> int:
        """Attach an outcome to every unresolved prediction for a lead."""
        recorded_at = recorded_at or datetime.now()
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE score_predictions
                SET converted = ?, outcome_recorded_at = ?
                WHERE tenant_id = ? AND lead_id = ? AND converted IS NULL
            """, (1 if converted else 0, _ts(recorded_at), tenant_id, lead_id))
            return cursor.rowcount

    def get_predictions(self, tenant_id: str, model_version: Optional[int] = None,
                        resolved_only: bool = False) -> List[ScorePrediction]:
        query = "SELECT * FROM score_predictions WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if model_version is not None:
            query += " AND model_version = ?"
            params.append(model_version)
        if resolved_only:
            query += " AND converted IS NOT NULL"
        query += " ORDER BY predicted_at"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [
                ScorePrediction(
                    id=row["id"],
                    tenant_id=row["tenant_id"],
                    lead_id=row["lead_id"],
                    model_version=row["model_version"],
                    score=row["score"],
                    tier=row["tier"],
                    predicted_at=_dt(row["predicted_at"]),
                    converted=None if row["converted"] is None else bool(row["converted"]),
                    outcome_recorded_at=_dt(row["outcome_recorded_at"]),
                )
                for row in rows
            ]

    # === ENROLLMENTS ===

    def _row_to_enrollment(self, row: sqlite3.Row) -> Enrollment:
        return Enrollment(
            id=row["id"],
            tenant_id=row["tenant_id"],
            lead_id=row["lead_id"],
            journey_id=row["journey_id"],
            journey_version=row["journey_version"],
            current_stage_index=row["current_stage_index"],
            status=EnrollmentStatus(row["status"]),
            version=row["version"],
            enrolled_at=_dt(row["enrolled_at"]),
            stage_entered_at=_dt(row["stage_entered_at"]),
            ended_at=_dt(row["ended_at"]),
            exit_reason=row["exit_reason"],
        )

    def _row_to_log(self, row: sqlite3.Row) -> TransitionLogEntry:
        return TransitionLogEntry(
            id=row["id"],
            tenant_id=row["tenant_id"],
            enrollment_id=row["enrollment_id"],
            from_stage=row["from_stage"],
            to_stage=row["to_stage"],
            trigger=TriggerType(row["trigger"]),
            actor=row["actor"],
            created_at=_dt(row["created_at"]),
            note=row["note"],
        )

    def _insert_log(self, conn: sqlite3.Connection, entry: TransitionLogEntry):
        conn.execute("""
            INSERT INTO transition_log
                (tenant_id, enrollment_id, from_stage, to_stage, trigger, actor, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (entry.tenant_id, entry.enrollment_id, entry.from_stage, entry.to_stage,
              entry.trigger.value, entry.actor, entry.note, _ts(entry.created_at)))

    def create_enrollment(
        self,
        enrollment: Enrollment,
        initial_stage: str,
        actor: str,
        trigger: TriggerType = TriggerType.MANUAL,
        replace: bool = False,
    ) -> Enrollment:
        """Insert a new active enrollment and its opening log entry.

        With ``replace`` any existing active enrollment of the lead in the same
        journey is closed first, in the same transaction: it is marked exited
        and its transition log ends with an exit entry.
        """
        with self._get_connection(immediate=True) as conn:
            if replace:
                existing = conn.execute("""
                    SELECT id FROM enrollments
                    WHERE tenant_id = ? AND lead_id = ? AND journey_id = ? AND status = 'active'
                """, (enrollment.tenant_id, enrollment.lead_id, enrollment.journey_id)).fetchone()
                if existing:
                    self._close_replaced_enrollment(conn, enrollment.tenant_id, existing["id"], actor,
                                                     enrollment.enrolled_at)

            try:
                conn.execute("""
                    INSERT INTO enrollments (
                        id, tenant_id, lead_id, journey_id, journey_version, current_stage_index,
                        status, version, enrolled_at, stage_entered_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (enrollment.id, enrollment.tenant_id, enrollment.lead_id, enrollment.journey_id,
                      enrollment.journey_version, enrollment.current_stage_index,
                      enrollment.status.value, enrollment.version,
                      _ts(enrollment.enrolled_at), _ts(enrollment.stage_entered_at)))
            except sqlite3.IntegrityError:
                raise DuplicateActiveEnrollment(enrollment.lead_id, enrollment.journey_id)

            entry = TransitionLogEntry(
                id=None,
                tenant_id=enrollment.tenant_id,
                enrollment_id=enrollment.id,
                from_stage=None,
                to_stage=initial_stage,
                trigger=trigger,
                actor=actor,
                created_at=enrollment.enrolled_at,
                note="Enrolled",
            )
            self._insert_log(conn, entry)

        enrollment.history = [entry]
        return enrollment

    def _close_replaced_enrollment(self, conn: sqlite3.Connection, tenant_id: str, enrollment_id: str,
                                   actor: str, now: datetime):
        row = conn.execute(
            "SELECT current_stage_index FROM enrollments WHERE tenant_id = ? AND id = ?",
            (tenant_id, enrollment_id)
        ).fetchone()
        last = conn.execute("""
            SELECT to_stage FROM transition_log WHERE tenant_id = ? AND enrollment_id = ?
            ORDER BY id DESC LIMIT 1
        """, (tenant_id, enrollment_id)).fetchone()
        self._insert_log(conn, TransitionLogEntry(
            id=None,
            tenant_id=tenant_id,
            enrollment_id=enrollment_id,
            from_stage=last["to_stage"] if last else str(row["current_stage_index"]),
            to_stage=EXITED_STAGE,
            trigger=TriggerType.MANUAL,
            actor=actor,
            created_at=now,
            note="Replaced by re-enrollment",
        ))
        conn.execute("""
            UPDATE enrollments
            SET status = ?, version = version + 1, ended_at = ?, exit_reason = ?
            WHERE tenant_id = ? AND id = ?
        """, (EnrollmentStatus.EXITED.value, _ts(now), "Replaced by re-enrollment", tenant_id, enrollment_id))

    def apply_transition(
        self,
        tenant_id: str,
        enrollment_id: str,
        expected_version: int,
        entry: TransitionLogEntry,
        stage_index: int,
        status: EnrollmentStatus,
        exit_reason: Optional[str] = None,
    ) -> Enrollment:
        """Append a log entry and move the stage pointer in one transaction.

        The pointer update only succeeds when the stored version still equals
        ``expected_version``; otherwise nothing is written and
        ConcurrentModification is raised.
        """
        now = entry.created_at
        ended_at = _ts(now) if status.is_terminal else None
        with self._get_connection(immediate=True) as conn:
            self._insert_log(conn, entry)
            cursor = conn.execute("""
                UPDATE enrollments
                SET current_stage_index = ?,
                    status = ?,
                    version = version + 1,
                    stage_entered_at = ?,
                    ended_at = ?,
                    exit_reason = ?
                WHERE tenant_id = ? AND id = ? AND version = ?
            """, (stage_index, status.value, _ts(now), ended_at, exit_reason,
                  tenant_id, enrollment_id, expected_version))
            if cursor.rowcount == 0:
                raise ConcurrentModification(enrollment_id)

            row = conn.execute(
                "SELECT * FROM enrollments WHERE tenant_id = ? AND id = ?", (tenant_id, enrollment_id)
            ).fetchone()

        return self._row_to_enrollment(row)

    def get_enrollment(self, tenant_id: str, enrollment_id: str, with_history: bool = False) -> Optional[Enrollment]:
        """Get an enrollment by ID."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM enrollments WHERE tenant_id = ? AND id = ?", (tenant_id, enrollment_id)
            ).fetchone()
            if row is None:
                return None
            enrollment = self._row_to_enrollment(row)
            if with_history:
                rows = conn.execute("""
                    SELECT * FROM transition_log WHERE tenant_id = ? AND enrollment_id = ?
                    ORDER BY created_at, id
                """, (tenant_id, enrollment_id)).fetchall()
                enrollment.history = [self._row_to_log(r) for r in rows]
            return enrollment

    def find_active_enrollment(self, tenant_id: str, lead_id: str, journey_id: str) -> Optional[Enrollment]:
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT * FROM enrollments
                WHERE tenant_id = ? AND lead_id = ? AND journey_id = ? AND status = 'active'
            """, (tenant_id, lead_id, journey_id)).fetchone()
            return self._row_to_enrollment(row) if row else None

    def find_enrollment(self, tenant_id: str, lead_id: str, journey_id: str) -> Optional[Enrollment]:
        """The lead's active enrollment in a journey, else its most recent one."""
        with self._get_connection() as conn:
            row = conn.execute("""
                SELECT id FROM enrollments
                WHERE tenant_id = ? AND lead_id = ? AND journey_id = ?
                ORDER BY status = 'active' DESC, enrolled_at DESC, rowid DESC
                LIMIT 1
            """, (tenant_id, lead_id, journey_id)).fetchone()
        return self.get_enrollment(tenant_id, row["id"], with_history=True) if row else None

    def list_enrollments(
        self,
        tenant_id: str,
        journey_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
        lead_id: Optional[str] = None,
    ) -> List[Enrollment]:
        """List enrollments with optional filters."""
        query = "SELECT * FROM enrollments WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if journey_id:
            query += " AND journey_id = ?"
            params.append(journey_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if lead_id:
            query += " AND lead_id = ?"
            params.append(lead_id)
        query += " ORDER BY enrolled_at, id"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_enrollment(row) for row in rows]

    def list_transition_log(self, tenant_id: str, enrollment_id: str) -> List[TransitionLogEntry]:
        """Transition log of an enrollment, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM transition_log WHERE tenant_id = ? AND enrollment_id = ?
                ORDER BY created_at, id
            """, (tenant_id, enrollment_id)).fetchall()
            return [self._row_to_log(row) for row in rows]

    def enrollment_counts(self, tenant_id: str, journey_id: str) -> Dict[str, int]:
        """Number of enrollments per status for a journey."""
        counts = {status.value: 0 for status in EnrollmentStatus}
        with self._get_connection() as conn:
            for row in conn.execute("""
                SELECT status, COUNT(*) AS n FROM enrollments
                WHERE tenant_id = ? AND journey_id = ? GROUP BY status
            """, (tenant_id, journey_id)):
                counts[row["status"]] = row["n"]
        return counts

    # === REQUIREMENTS & APPROVALS ===

    def set_requirement_status(
        self,
        tenant_id: str,
        enrollment_id: str,
        requirement_id: str,
        status: VerificationStatus,
        updated_by: Optional[str] = None,
        updated_at: Optional[datetime] = None,
    ) -> RequirementState:
        updated_at = updated_at or datetime.now()
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO requirement_status
                    (tenant_id, enrollment_id, requirement_id, status, updated_by, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, enrollment_id, requirement_id) DO UPDATE SET
                    status = excluded.status,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
            """, (tenant_id, enrollment_id, requirement_id, status.value, updated_by, _ts(updated_at)))
        return RequirementState(enrollment_id=enrollment_id, requirement_id=requirement_id,
                                status=status, updated_by=updated_by, updated_at=updated_at)

    def get_requirement_states(self, tenant_id: str, enrollment_id: str) -> Dict[str, RequirementState]:
        """Requirement states of an enrollment, keyed by requirement id."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM requirement_status WHERE tenant_id = ? AND enrollment_id = ?",
                (tenant_id, enrollment_id)
            ).fetchall()
            return {
                row["requirement_id"]: RequirementState(
                    enrollment_id=row["enrollment_id"],
                    requirement_id=row["requirement_id"],
                    status=VerificationStatus(row["status"]),
                    updated_by=row["updated_by"],
                    updated_at=_dt(row["updated_at"]),
                )
                for row in rows
            }

    def record_stage_approval(self, tenant_id: str, enrollment_id: str, stage_index: int,
                              approved_by: str, note: Optional[str] = None):
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO stage_approvals
                    (tenant_id, enrollment_id, stage_index, approved_by, note, approved_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (tenant_id, enrollment_id, stage_index, approved_by, note, _ts(datetime.now())))

    def get_approved_stages(self, tenant_id: str, enrollment_id: str) -> Set[int]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT stage_index FROM stage_approvals WHERE tenant_id = ? AND enrollment_id = ?",
                (tenant_id, enrollment_id)
            ).fetchall()
            return {row["stage_index"] for row in rows}

    # === COMMUNICATIONS ===

    def record_communication(self, record: CommunicationRecord) -> CommunicationRecord:
        """Store a sent communication and mark the lead as contacted."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO communications (tenant_id, lead_id, enrollment_id, channel, action, priority, sent_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (record.tenant_id, record.lead_id, record.enrollment_id, record.channel,
                  record.action, record.priority, _ts(record.sent_at)))
            conn.execute("""
                UPDATE leads SET last_contacted_at = ?
                WHERE tenant_id = ? AND id = ?
            """, (_ts(record.sent_at), record.tenant_id, record.lead_id))
            record.id = cursor.lastrowid
        return record

    def get_communications(
        self,
        tenant_id: str,
        lead_id: str,
        channel: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[CommunicationRecord]:
        """Communications sent to a lead, oldest first."""
        query = "SELECT * FROM communications WHERE tenant_id = ? AND lead_id = ?"
        params: List[Any] = [tenant_id, lead_id]
        if channel:
            query += " AND channel = ?"
            params.append(channel)
        if since:
            query += " AND sent_at >= ?"
            params.append(_ts(since))
        query += " ORDER BY sent_at"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [
                CommunicationRecord(
                    id=row["id"],
                    tenant_id=row["tenant_id"],
                    lead_id=row["lead_id"],
                    channel=row["channel"],
                    action=row["action"],
                    priority=row["priority"],
                    sent_at=_dt(row["sent_at"]),
                    enrollment_id=row["enrollment_id"],
                )
                for row in rows
            ]

    # === ROUTING ===

    def save_routing_rule(self, tenant_id: str, rule_id: str, name: str, priority: int,
                          conditions: Dict[str, Any], target: str, active: bool = True):
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO routing_rules (tenant_id, id, name, priority, conditions_json, target, active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, id) DO UPDATE SET
                    name = excluded.name,
                    priority = excluded.priority,
                    conditions_json = excluded.conditions_json,
                    target = excluded.target,
                    active = excluded.active
            """, (tenant_id, rule_id, name, priority, json.dumps(conditions), target,
                  1 if active else 0, _ts(datetime.now())))

    def get_routing_rules(self, tenant_id: str, active_only: bool = True) -> List[Dict[str, Any]]:
        """Routing rules as plain dicts, highest priority (lowest number) first."""
        query = "SELECT * FROM routing_rules WHERE tenant_id = ?"
        if active_only:
            query += " AND active = 1"
        query += " ORDER BY priority, id"

        with self._get_connection() as conn:
            rows = conn.execute(query, (tenant_id,)).fetchall()
            return [
                {
                    "id": row["id"],
                    "name": row["name"],
                    "priority": row["priority"],
                    "conditions": json.loads(row["conditions_json"]),
                    "target": row["target"],
                    "active": bool(row["active"]),
                }
                for row in rows
            ]

    def clear_assignments(self, tenant_id: str) -> int:
        """Remove every routing assignment of a tenant."""
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM lead_assignments WHERE tenant_id = ?", (tenant_id,))
            return cursor.rowcount

    def upsert_assignment(self, assignment: RoutingAssignment) -> RoutingAssignment:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO lead_assignments (tenant_id, lead_id, advisor_id, rule_id, assigned_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, lead_id) DO UPDATE SET
                    advisor_id = excluded.advisor_id,
                    rule_id = excluded.rule_id,
                    assigned_at = excluded.assigned_at
            """, (assignment.tenant_id, assignment.lead_id, assignment.advisor_id,
                  assignment.rule_id, _ts(assignment.assigned_at)))
        return assignment

    def get_assignments(self, tenant_id: str) -> List[RoutingAssignment]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM lead_assignments WHERE tenant_id = ? ORDER BY lead_id", (tenant_id,)
            ).fetchall()
            return [
                RoutingAssignment(
                    tenant_id=row["tenant_id"],
                    lead_id=row["lead_id"],
                    advisor_id=row["advisor_id"],
                    rule_id=row["rule_id"],
                    assigned_at=_dt(row["assigned_at"]),
                )
                for row in rows
            ]

    def list_active_tenants(self) -> List[str]:
        """Tenants with at least one active enrollment."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT tenant_id FROM enrollments WHERE status = 'active' ORDER BY tenant_id"
            ).fetchall()
            return [row["tenant_id"] for row in rows]

    def ping(self) -> bool:
        """Check the database is reachable."""
        with self._get_connection() as conn:
            conn.execute("SELECT 1")
        return True
