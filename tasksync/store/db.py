import sqlite3
from pathlib import Path


def get_conn(db_path: str, timeout: float = 5.0) -> sqlite3.Connection:
    """Open a store handle. The caller owns it and must close it."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if db_path != ":memory:":
        # Plain CRUD reads keep working while a sync session holds the write lock.
        conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_schema(conn: sqlite3.Connection):
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS tasks (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          title TEXT NOT NULL,
          description TEXT DEFAULT '',
          completed INTEGER NOT NULL DEFAULT 0,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          is_deleted INTEGER NOT NULL DEFAULT 0,
          sync_status TEXT NOT NULL DEFAULT 'pending',
          server_id TEXT,
          last_synced_at TEXT
        )
        """
    )

    # seq is the enqueue order; id is the public identifier of the operation.
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_queue (
          seq INTEGER PRIMARY KEY AUTOINCREMENT,
          id TEXT UNIQUE NOT NULL,
          user_id TEXT NOT NULL,
          task_id TEXT NOT NULL,
          local_id TEXT,
          operation TEXT NOT NULL,
          data TEXT NOT NULL,
          retry_count INTEGER NOT NULL DEFAULT 0,
          error_message TEXT,
          created_at TEXT NOT NULL,
          operation_timestamp TEXT NOT NULL
        )
        """
    )

    # Databases created before local_id was tracked on queued rows.
    queue_cols = {row["name"] for row in cur.execute("PRAGMA table_info(sync_queue)")}
    if "local_id" not in queue_cols:
        cur.execute("ALTER TABLE sync_queue ADD COLUMN local_id TEXT")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS dead_letter_queue (
          id TEXT PRIMARY KEY,
          queue_id TEXT UNIQUE NOT NULL,
          user_id TEXT NOT NULL,
          task_id TEXT NOT NULL,
          operation TEXT NOT NULL,
          data TEXT NOT NULL,
          retry_count INTEGER NOT NULL,
          error_message TEXT,
          operation_timestamp TEXT NOT NULL,
          original_created_at TEXT NOT NULL,
          failed_at TEXT NOT NULL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_logs (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL,
          change_count INTEGER NOT NULL,
          processed INTEGER NOT NULL DEFAULT 0,
          failed INTEGER NOT NULL DEFAULT 0,
          status TEXT NOT NULL,
          created_at TEXT NOT NULL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS id_mappings (
          user_id TEXT NOT NULL,
          local_id TEXT NOT NULL,
          server_id TEXT NOT NULL,
          created_at TEXT NOT NULL,
          PRIMARY KEY (user_id, local_id)
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_user_updated ON tasks(user_id, updated_at)")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_queue_order ON sync_queue(user_id, task_id, operation_timestamp)"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_dead_letter_user ON dead_letter_queue(user_id, failed_at)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sync_logs_user ON sync_logs(user_id, created_at)")

    conn.commit()


def init_db(db_path: str):
    conn = get_conn(db_path)
    try:
        init_schema(conn)
    finally:
        conn.close()
