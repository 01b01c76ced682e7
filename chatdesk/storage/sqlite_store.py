"""
SQLite storage for users, conversations, messages and admin data.
This is the source of truth. Single portable file. Query with SQL.

Every public method opens its own short-lived connection, so the store can be
called from worker threads (see storage/gateway.py) without sharing a handle.
"""

import sqlite3
import logging
from pathlib import Path
from contextlib import contextmanager

from chatdesk.storage.models import (
    ApiKey,
    Attachment,
    Conversation,
    Folder,
    Message,
    Reaction,
    User,
    utc_now,
)

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    picture TEXT,
    is_admin INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS folders (
    id TEXT PRIMARY KEY,
    user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    color TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
    folder_id TEXT REFERENCES folders(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    model TEXT NOT NULL DEFAULT '',
    system_prompt TEXT,
    is_pinned INTEGER NOT NULL DEFAULT 0,
    is_archived INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS message_reactions (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    reaction TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (message_id, user_id, reaction)
);

CREATE TABLE IF NOT EXISTS api_keys (
    id TEXT PRIMARY KEY,
    provider TEXT NOT NULL UNIQUE,
    api_key TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS attachments (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    url TEXT NOT NULL,
    filename TEXT NOT NULL,
    size INTEGER,
    mime_type TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, created_at);
CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_folders_user
    ON folders(user_id);
CREATE INDEX IF NOT EXISTS idx_reactions_message
    ON message_reactions(message_id);
CREATE INDEX IF NOT EXISTS idx_attachments_message
    ON attachments(message_id);
"""

# Columns callers may change through update_* methods
_CONVERSATION_FIELDS = {"title", "folder_id", "model", "system_prompt", "is_pinned", "is_archived"}
_FOLDER_FIELDS = {"name", "color"}
_API_KEY_FIELDS = {"api_key", "is_active"}

# Sentinel: "no folder filter" vs folder_id=None meaning "unfiled only"
ANY_FOLDER = object()


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _db_values(updates: dict) -> dict:
    """Booleans are stored as 0/1."""
    return {k: int(v) if isinstance(v, bool) else v for k, v in updates.items()}


class SQLiteStore:
    """Thread-safe SQLite chat store."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _update(self, table: str, row_id: str, updates: dict, allowed: set[str]) -> bool:
        """Apply whitelisted column updates and bump updated_at. Returns False if no row."""
        fields = _db_values({k: v for k, v in updates.items() if k in allowed})
        ignored = set(updates) - allowed
        if ignored:
            logger.debug("Ignoring non-updatable %s fields: %s", table, sorted(ignored))
        fields["updated_at"] = utc_now()
        assignments = ", ".join(f"{col} = ?" for col in fields)
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                (*fields.values(), row_id),
            )
        return cur.rowcount > 0

    # ─ Users ──────────────────────────────────────────────────────────────

    def create_user(self, user: User) -> User:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO users (id, email, name, picture, is_admin, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (user.id, user.email, user.name, user.picture, int(user.is_admin), user.created_at),
            )
        logger.info("Created user %s", user.id)
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_row(row) if row else None

    def get_user_by_email(self, email: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return User.from_row(row) if row else None

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at").fetchall()
        return [User.from_row(r) for r in rows]

    def set_user_admin(self, user_id: str, is_admin: bool) -> User | None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET is_admin = ? WHERE id = ?",
                (int(is_admin), user_id),
            )
        return self.get_user(user_id)

    # ─ Folders ────────────────────────────────────────────────────────────

    def list_folders(self, user_id: str | None = None) -> list[Folder]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM folders WHERE user_id = ? ORDER BY updated_at DESC",
                    (user_id,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM folders ORDER BY updated_at DESC").fetchall()
        return [Folder.from_row(r) for r in rows]

    def get_folder(self, folder_id: str) -> Folder | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone()
        return Folder.from_row(row) if row else None

    def create_folder(self, folder: Folder) -> Folder:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO folders (id, user_id, name, color, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (folder.id, folder.user_id, folder.name, folder.color,
                 folder.created_at, folder.updated_at),
            )
        return folder

    def update_folder(self, folder_id: str, **updates) -> Folder | None:
        if not self._update("folders", folder_id, updates, _FOLDER_FIELDS):
            return None
        return self.get_folder(folder_id)

    def delete_folder(self, folder_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))

    # ─ Conversations ──────────────────────────────────────────────────────

    def list_conversations(
        self,
        user_id: str | None = None,
        folder_id=ANY_FOLDER,
        include_archived: bool = False,
    ) -> list[Conversation]:
        """
        List conversations, pinned first, then most recently updated.
        folder_id=None restricts to conversations outside any folder.
        """
        clauses: list[str] = []
        params: list = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if not include_archived:
            clauses.append("is_archived = 0")
        if folder_id is None:
            clauses.append("folder_id IS NULL")
        elif folder_id is not ANY_FOLDER:
            clauses.append("folder_id = ?")
            params.append(folder_id)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM conversations {where} "
                "ORDER BY is_pinned DESC, updated_at DESC",
                params,
            ).fetchall()
        return [Conversation.from_row(r) for r in rows]

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        return Conversation.from_row(row) if row else None

    def create_conversation(self, conv: Conversation) -> Conversation:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO conversations
                   (id, user_id, folder_id, title, model, system_prompt,
                    is_pinned, is_archived, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (conv.id, conv.user_id, conv.folder_id, conv.title, conv.model,
                 conv.system_prompt, int(conv.is_pinned), int(conv.is_archived),
                 conv.created_at, conv.updated_at),
            )
        logger.debug("Created conversation %s (user=%s)", conv.id, conv.user_id)
        return conv

    def update_conversation(self, conversation_id: str, **updates) -> Conversation | None:
        if not self._update("conversations", conversation_id, updates, _CONVERSATION_FIELDS):
            return None
        return self.get_conversation(conversation_id)

    def delete_conversation(self, conversation_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

    def search_conversations(self, query: str, user_id: str | None = None) -> list[Conversation]:
        """Match the query against titles and message content (case-insensitive)."""
        term = f"%{_escape_like(query)}%"
        sql = """SELECT * FROM conversations c
                 WHERE (c.title LIKE ? ESCAPE '\\'
                        OR EXISTS (SELECT 1 FROM messages m
                                   WHERE m.conversation_id = c.id
                                     AND m.content LIKE ? ESCAPE '\\'))"""
        params: list = [term, term]
        if user_id:
            sql += " AND c.user_id = ?"
            params.append(user_id)
        sql += " ORDER BY c.updated_at DESC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Conversation.from_row(r) for r in rows]

    # ─ Messages ───────────────────────────────────────────────────────────

    def get_messages(self, conversation_id: str) -> list[Message]:
        """All messages for a conversation, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM messages WHERE conversation_id = ?
                   ORDER BY created_at, rowid""",
                (conversation_id,),
            ).fetchall()
        return [Message.from_row(r) for r in rows]

    def get_message(self, message_id: str) -> Message | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return Message.from_row(row) if row else None

    def count_messages(self, conversation_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()[0]

    def create_message(self, msg: Message) -> Message:
        """Store a single message and bump the conversation's updated_at."""
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO messages (id, conversation_id, role, content, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (msg.id, msg.conversation_id, msg.role, msg.content, msg.created_at),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (utc_now(), msg.conversation_id),
            )
        logger.debug("Stored message %s (role=%s, conv=%s)", msg.id, msg.role, msg.conversation_id)
        return msg

    # ─ Reactions ──────────────────────────────────────────────────────────

    def get_reactions(self, message_id: str) -> list[Reaction]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM message_reactions WHERE message_id = ? ORDER BY created_at",
                (message_id,),
            ).fetchall()
        return [Reaction.from_row(r) for r in rows]

    def add_reaction(self, reaction: Reaction) -> Reaction:
        """Add a reaction; an identical (message, user, reaction) row is returned as-is."""
        with self._connect() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO message_reactions
                   (id, message_id, user_id, reaction, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (reaction.id, reaction.message_id, reaction.user_id,
                 reaction.reaction, reaction.created_at),
            )
            row = conn.execute(
                """SELECT * FROM message_reactions
                   WHERE message_id = ? AND user_id = ? AND reaction = ?""",
                (reaction.message_id, reaction.user_id, reaction.reaction),
            ).fetchone()
        return Reaction.from_row(row)

    def remove_reaction(self, message_id: str, user_id: str, reaction: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """DELETE FROM message_reactions
                   WHERE message_id = ? AND user_id = ? AND reaction = ?""",
                (message_id, user_id, reaction),
            )

    # ─ API keys ───────────────────────────────────────────────────────────

    def list_api_keys(self) -> list[ApiKey]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM api_keys ORDER BY updated_at DESC").fetchall()
        return [ApiKey.from_row(r) for r in rows]

    def get_api_key(self, key_id: str) -> ApiKey | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)).fetchone()
        return ApiKey.from_row(row) if row else None

    def get_api_key_by_provider(self, provider: str) -> ApiKey | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE provider = ?", (provider,)
            ).fetchone()
        return ApiKey.from_row(row) if row else None

    def get_active_api_key(self, provider: str) -> str | None:
        """Secret of the active key for a provider, or None."""
        key = self.get_api_key_by_provider(provider)
        if key and key.is_active and key.api_key:
            return key.api_key
        return None

    def create_api_key(self, key: ApiKey) -> ApiKey:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO api_keys (id, provider, api_key, is_active, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (key.id, key.provider, key.api_key, int(key.is_active),
                 key.created_at, key.updated_at),
            )
        logger.info("Stored API key for provider %s", key.provider)
        return key

    def update_api_key(self, key_id: str, **updates) -> ApiKey | None:
        if not self._update("api_keys", key_id, updates, _API_KEY_FIELDS):
            return None
        return self.get_api_key(key_id)

    def upsert_api_key(self, provider: str, secret: str) -> ApiKey:
        """Create the provider's key or replace its secret and re-activate it."""
        existing = self.get_api_key_by_provider(provider)
        if existing:
            return self.update_api_key(existing.id, api_key=secret, is_active=True)
        return self.create_api_key(ApiKey(provider=provider, api_key=secret))

    def delete_api_key(self, key_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM api_keys WHERE id = ?", (key_id,))

    # ─ Attachments ────────────────────────────────────────────────────────

    def create_attachment(self, attachment: Attachment) -> Attachment:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO attachments
                   (id, message_id, type, url, filename, size, mime_type, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (attachment.id, attachment.message_id, attachment.type, attachment.url,
                 attachment.filename, attachment.size, attachment.mime_type,
                 attachment.created_at),
            )
        return attachment

    def get_attachments(self, message_id: str) -> list[Attachment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM attachments WHERE message_id = ? ORDER BY created_at",
                (message_id,),
            ).fetchall()
        return [Attachment.from_row(r) for r in rows]

    # ─ Stats ──────────────────────────────────────────────────────────────

    def get_stats(self) -> dict:
        """Counts for the admin dashboard."""
        with self._connect() as conn:
            user_count = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            admin_count = conn.execute(
                "SELECT COUNT(*) FROM users WHERE is_admin = 1"
            ).fetchone()[0]
            conv_count = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
            msg_count = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            user_msgs = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE role = 'user'"
            ).fetchone()[0]
            asst_msgs = conn.execute(
                "SELECT COUNT(*) FROM messages WHERE role = 'assistant'"
            ).fetchone()[0]

        return {
            "totalUsers": user_count,
            "adminUsers": admin_count,
            "totalConversations": conv_count,
            "totalMessages": msg_count,
            "userMessages": user_msgs,
            "assistantMessages": asst_msgs,
        }
