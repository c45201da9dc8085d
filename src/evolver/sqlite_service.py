"""
SQLite-backed storage service.

Uses a single SQLite database with one JSON document per row. Foreign keys
that are queried (evaluation -> epochs, epoch -> metrics/snapshots,
run -> sessions/suggestions) are kept in indexed columns next to the document.
Fully local, no cloud dependencies.
"""

import aiosqlite
import json
import os
from datetime import datetime, timezone
from typing import List, Optional

from .models import (
    Evaluation, EvaluationStatus, Epoch, TestRun, TestRunStatus,
    TestSession, SessionStatus, PromptVersion, Persona, MetricsRecord,
    HealingSuggestion, Snapshot,
)
from .seed_service import default_personas
from . import config

import logging
logger = logging.getLogger(__name__)


class SQLiteService:
    """Local SQLite storage service."""

    def __init__(self, db_path: Optional[str] = None):
        self._db_path = db_path or config.SQLITE_DB_PATH
        self._initialized = False

    async def _ensure_initialized(self):
        if self._initialized:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self._db_path)), exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS evaluations (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS epochs (
                    id TEXT PRIMARY KEY,
                    evaluation_id TEXT NOT NULL,
                    epoch_number INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    UNIQUE(evaluation_id, epoch_number)
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS test_runs (
                    id TEXT PRIMARY KEY,
                    epoch_id TEXT,
                    status TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS test_sessions (
                    id TEXT PRIMARY KEY,
                    test_run_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS prompts (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS personas (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS metrics (
                    id TEXT PRIMARY KEY,
                    epoch_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS suggestions (
                    id TEXT PRIMARY KEY,
                    test_run_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    id TEXT PRIMARY KEY,
                    epoch_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_eval_status ON evaluations(status)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_epoch_eval ON epochs(evaluation_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_run_epoch ON test_runs(epoch_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_run_status ON test_runs(status)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_session_run ON test_sessions(test_run_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_session_status ON test_sessions(json_extract(data, '$.status'))")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_prompt_parent ON prompts(json_extract(data, '$.parent_id'))")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_metrics_epoch ON metrics(epoch_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_sugg_run ON suggestions(test_run_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_snap_epoch ON snapshots(epoch_id)")
            await db.commit()
        self._initialized = True

    def _conn(self) -> aiosqlite.Connection:
        """Return an aiosqlite connection context manager (do NOT await here)."""
        return aiosqlite.connect(self._db_path)

    # ===== Evaluation CRUD =====

    async def create_evaluation(self, evaluation: Evaluation) -> Evaluation:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO evaluations (id, status, data) VALUES (?, ?, ?)",
                (evaluation.id, evaluation.status.value, evaluation.model_dump_json())
            )
            await db.commit()
        return evaluation

    async def get_evaluation(self, evaluation_id: str) -> Optional[Evaluation]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM evaluations WHERE id = ?", (evaluation_id,))
            row = await cursor.fetchone()
            if row:
                return Evaluation(**json.loads(row[0]))
            return None

    async def list_evaluations(self, skip: int = 0, limit: int = 100,
                               status: Optional[EvaluationStatus] = None) -> List[Evaluation]:
        await self._ensure_initialized()
        async with self._conn() as db:
            if status:
                cursor = await db.execute(
                    "SELECT data FROM evaluations WHERE status = ? ORDER BY json_extract(data, '$.created_at') DESC LIMIT ? OFFSET ?",
                    (status.value, limit, skip)
                )
            else:
                cursor = await db.execute(
                    "SELECT data FROM evaluations ORDER BY json_extract(data, '$.created_at') DESC LIMIT ? OFFSET ?",
                    (limit, skip)
                )
            rows = await cursor.fetchall()
            return [Evaluation(**json.loads(r[0])) for r in rows]

    async def update_evaluation(self, evaluation: Evaluation) -> Evaluation:
        await self._ensure_initialized()
        evaluation.updated_at = datetime.now(timezone.utc)
        async with self._conn() as db:
            await db.execute(
                "UPDATE evaluations SET status = ?, data = ? WHERE id = ?",
                (evaluation.status.value, evaluation.model_dump_json(), evaluation.id)
            )
            await db.commit()
        return evaluation

    # ===== Epoch CRUD =====

    async def create_epoch(self, epoch: Epoch) -> Epoch:
        """Insert an epoch. UNIQUE(evaluation_id, epoch_number) guards against duplicates."""
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO epochs (id, evaluation_id, epoch_number, data) VALUES (?, ?, ?, ?)",
                (epoch.id, epoch.evaluation_id, epoch.epoch_number, epoch.model_dump_json())
            )
            await db.commit()
        return epoch

    async def get_epoch(self, epoch_id: str) -> Optional[Epoch]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM epochs WHERE id = ?", (epoch_id,))
            row = await cursor.fetchone()
            if row:
                return Epoch(**json.loads(row[0]))
            return None

    async def list_epochs(self, evaluation_id: str) -> List[Epoch]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute(
                "SELECT data FROM epochs WHERE evaluation_id = ? ORDER BY epoch_number ASC",
                (evaluation_id,)
            )
            rows = await cursor.fetchall()
            return [Epoch(**json.loads(r[0])) for r in rows]

    async def get_max_epoch_number(self, evaluation_id: str) -> int:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute(
                "SELECT MAX(epoch_number) FROM epochs WHERE evaluation_id = ?", (evaluation_id,)
            )
            row = await cursor.fetchone()
            return row[0] if row and row[0] is not None else 0

    async def update_epoch(self, epoch: Epoch) -> Epoch:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "UPDATE epochs SET data = ? WHERE id = ?",
                (epoch.model_dump_json(), epoch.id)
            )
            await db.commit()
        return epoch

    # ===== Test Run CRUD =====

    async def create_test_run(self, test_run: TestRun, sessions: Optional[List[TestSession]] = None) -> TestRun:
        """Insert a run and (optionally) all of its sessions in one transaction."""
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO test_runs (id, epoch_id, status, data) VALUES (?, ?, ?, ?)",
                (test_run.id, test_run.epoch_id, test_run.status.value, test_run.model_dump_json())
            )
            for session in sessions or []:
                await db.execute(
                    "INSERT INTO test_sessions (id, test_run_id, data) VALUES (?, ?, ?)",
                    (session.id, session.test_run_id, session.model_dump_json())
                )
            await db.commit()
        return test_run

    async def get_test_run(self, test_run_id: str) -> Optional[TestRun]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM test_runs WHERE id = ?", (test_run_id,))
            row = await cursor.fetchone()
            if row:
                return TestRun(**json.loads(row[0]))
            return None

    async def list_test_runs(self, status: Optional[TestRunStatus] = None) -> List[TestRun]:
        await self._ensure_initialized()
        async with self._conn() as db:
            if status:
                cursor = await db.execute("SELECT data FROM test_runs WHERE status = ?", (status.value,))
            else:
                cursor = await db.execute("SELECT data FROM test_runs")
            rows = await cursor.fetchall()
            return [TestRun(**json.loads(r[0])) for r in rows]

    async def update_test_run(self, test_run: TestRun) -> TestRun:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "UPDATE test_runs SET status = ?, data = ? WHERE id = ?",
                (test_run.status.value, test_run.model_dump_json(), test_run.id)
            )
            await db.commit()
        return test_run

    # ===== Test Session CRUD =====

    async def get_session(self, session_id: str) -> Optional[TestSession]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM test_sessions WHERE id = ?", (session_id,))
            row = await cursor.fetchone()
            if row:
                return TestSession(**json.loads(row[0]))
            return None

    async def list_sessions(self, test_run_id: str, status: Optional[SessionStatus] = None) -> List[TestSession]:
        await self._ensure_initialized()
        async with self._conn() as db:
            if status:
                cursor = await db.execute(
                    "SELECT data FROM test_sessions WHERE test_run_id = ? AND json_extract(data, '$.status') = ? "
                    "ORDER BY json_extract(data, '$.persona_id'), json_extract(data, '$.instance_number')",
                    (test_run_id, status.value)
                )
            else:
                cursor = await db.execute(
                    "SELECT data FROM test_sessions WHERE test_run_id = ? "
                    "ORDER BY json_extract(data, '$.persona_id'), json_extract(data, '$.instance_number')",
                    (test_run_id,)
                )
            rows = await cursor.fetchall()
            return [TestSession(**json.loads(r[0])) for r in rows]

    async def update_session(self, session: TestSession) -> TestSession:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "UPDATE test_sessions SET data = ? WHERE id = ?",
                (session.model_dump_json(), session.id)
            )
            await db.commit()
        return session

    # ===== Prompt Versions =====

    async def create_prompt(self, prompt: PromptVersion) -> PromptVersion:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO prompts (id, data) VALUES (?, ?)",
                (prompt.id, prompt.model_dump_json())
            )
            await db.commit()
        return prompt

    async def get_prompt(self, prompt_id: str) -> Optional[PromptVersion]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM prompts WHERE id = ?", (prompt_id,))
            row = await cursor.fetchone()
            if row:
                return PromptVersion(**json.loads(row[0]))
            return None

    async def update_prompt_stats(self, prompt: PromptVersion) -> PromptVersion:
        """Persist run statistics. Content and lineage are never rewritten."""
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "UPDATE prompts SET data = json_set(data, '$.total_runs', ?, '$.avg_accuracy', ?, '$.avg_latency', ?) WHERE id = ?",
                (prompt.total_runs, prompt.avg_accuracy, prompt.avg_latency, prompt.id)
            )
            await db.commit()
        return prompt

    # ===== Personas =====

    async def create_persona(self, persona: Persona) -> Persona:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO personas (id, data) VALUES (?, ?)",
                (persona.id, persona.model_dump_json())
            )
            await db.commit()
        return persona

    async def get_persona(self, persona_id: str) -> Optional[Persona]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM personas WHERE id = ?", (persona_id,))
            row = await cursor.fetchone()
            if row:
                return Persona(**json.loads(row[0]))
            return None

    async def list_personas(self) -> List[Persona]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM personas ORDER BY json_extract(data, '$.name')")
            rows = await cursor.fetchall()
            return [Persona(**json.loads(r[0])) for r in rows]

    async def ensure_default_personas(self) -> int:
        """Seed the built-in customer personas if none exist yet.

        Returns the number of personas seeded (0 if personas already exist).
        """
        await self._ensure_initialized()
        existing = await self.list_personas()
        if existing:
            return 0

        logger.info("No personas found, seeding defaults")
        seeded = 0
        for persona in default_personas():
            await self.create_persona(persona)
            seeded += 1
        return seeded

    # ===== Analysis output =====

    async def create_metrics_record(self, record: MetricsRecord) -> MetricsRecord:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO metrics (id, epoch_id, data) VALUES (?, ?, ?)",
                (record.id, record.epoch_id, record.model_dump_json())
            )
            await db.commit()
        return record

    async def list_metrics(self, epoch_id: str) -> List[MetricsRecord]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM metrics WHERE epoch_id = ?", (epoch_id,))
            rows = await cursor.fetchall()
            return [MetricsRecord(**json.loads(r[0])) for r in rows]

    async def create_suggestion(self, suggestion: HealingSuggestion) -> HealingSuggestion:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO suggestions (id, test_run_id, data) VALUES (?, ?, ?)",
                (suggestion.id, suggestion.test_run_id, suggestion.model_dump_json())
            )
            await db.commit()
        return suggestion

    async def list_suggestions(self, test_run_id: str) -> List[HealingSuggestion]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute(
                "SELECT data FROM suggestions WHERE test_run_id = ? ORDER BY json_extract(data, '$.confidence') DESC",
                (test_run_id,)
            )
            rows = await cursor.fetchall()
            return [HealingSuggestion(**json.loads(r[0])) for r in rows]

    async def update_suggestion(self, suggestion: HealingSuggestion) -> HealingSuggestion:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "UPDATE suggestions SET data = ? WHERE id = ?",
                (suggestion.model_dump_json(), suggestion.id)
            )
            await db.commit()
        return suggestion

    async def create_snapshot(self, snapshot: Snapshot) -> Snapshot:
        await self._ensure_initialized()
        async with self._conn() as db:
            await db.execute(
                "INSERT INTO snapshots (id, epoch_id, data) VALUES (?, ?, ?)",
                (snapshot.id, snapshot.epoch_id, snapshot.model_dump_json())
            )
            await db.commit()
        return snapshot

    async def list_snapshots(self, epoch_id: str) -> List[Snapshot]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute(
                "SELECT data FROM snapshots WHERE epoch_id = ? ORDER BY json_extract(data, '$.created_at')",
                (epoch_id,)
            )
            rows = await cursor.fetchall()
            return [Snapshot(**json.loads(r[0])) for r in rows]

    async def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        await self._ensure_initialized()
        async with self._conn() as db:
            cursor = await db.execute("SELECT data FROM snapshots WHERE id = ?", (snapshot_id,))
            row = await cursor.fetchone()
            if row:
                return Snapshot(**json.loads(row[0]))
            return None


# Singleton
_service: Optional[SQLiteService] = None


def get_db_service() -> SQLiteService:
    global _service
    if not _service:
        _service = SQLiteService()
    return _service
