import contextlib
import json
import logging
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Tuple

from .domain import (
    AuthError,
    Note,
    NotFoundError,
    PermissionDenied,
    Profile,
    UploadTooLarge,
)
from .utils import hash_password, make_id, parse_tags, strip_bearer, time_now

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".pdf", ".doc", ".docx", ".ppt", ".pptx")

PROFILE_TEXT_FIELDS = (
    "full_name", "bio", "avatar_url", "institute", "course", "stream",
    "last_qualification", "aim", "study_hours", "preferred_content",
)

NOTE_COLUMNS = (
    "id, user_id, title, description, subject, tags, file_name, file_url, "
    "download_count, created_time, updated_time"
)

PROFILE_COLUMNS = (
    "id, email, full_name, bio, avatar_url, institute, course, stream, interests, "
    "last_qualification, aim, study_hours, preferred_content, profile_completion, "
    "donor_verified, donor_amount, donor_at, created_time"
)

class SqliteStore:
    """Shared connection handling for the sqlite-backed stores."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        # Writes are serialised; reads open their own connection.
        self.lock = threading.Lock()
        self._create_tables()

    @contextlib.contextmanager
    def _get_db_connection(self):
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        try:
            yield conn
        finally:
            conn.close()

    def _create_tables(self):
        raise NotImplementedError

class AuthService(SqliteStore):
    """Handles user registration, login, and session validation."""

    def __init__(self, db_path: str = "collegestar.db"):
        # Caches: {email: {id, password_hash}}, {token: user_id}, {user_id: email}
        self.users: Dict[str, Dict[str, str]] = {}
        self.active: Dict[str, str] = {}
        self.emails: Dict[str, str] = {}
        super().__init__(db_path)
        self._load_from_database()

    def _create_tables(self):
        with self._get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                created_time TEXT NOT NULL
            )
            """)
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                created_time TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users (id)
            )
            """)
            conn.commit()

    def _load_from_database(self):
        with self._get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT id, email, password_hash FROM users")
            for user_id, email, password_hash in cursor.fetchall():
                self.users[email] = {"id": user_id, "password_hash": password_hash}
                self.emails[user_id] = email
            cursor.execute("SELECT token, user_id FROM sessions")
            for token, user_id in cursor.fetchall():
                self.active[token] = user_id

    def add_user(self, email: str, password: str) -> str:
        email = email.strip().lower()
        with self.lock:
            if email in self.users:
                raise AuthError("Email already exists")
            if len(password) < 6:
                raise AuthError("Password must be at least 6 characters long")
            uid = make_id("usr")
            password_hash = hash_password(password)
            with self._get_db_connection() as conn:
                conn.execute(
                    "INSERT INTO users (id, email, password_hash, created_time) VALUES (?, ?, ?, ?)",
                    (uid, email, password_hash, time_now())
                )
                conn.commit()
            self.users[email] = {"id": uid, "password_hash": password_hash}
            self.emails[uid] = email
            return uid

    def login(self, email: str, password: str) -> str:
        email = email.strip().lower()
        with self.lock:
            user = self.users.get(email)
            if not user or user["password_hash"] != hash_password(password):
                raise AuthError("Invalid email or password")
            token = make_id("sess")
            with self._get_db_connection() as conn:
                conn.execute(
                    "INSERT INTO sessions (token, user_id, created_time) VALUES (?, ?, ?)",
                    (token, user["id"], time_now())
                )
                conn.commit()
            self.active[token] = user["id"]
            return token

    def validate(self, token: Optional[str]) -> str:
        """Return the user ID behind a (possibly ``Bearer``-prefixed) session token."""
        if not token:
            raise AuthError("Authorization token is required")
        token = strip_bearer(token)
        if token not in self.active:
            raise AuthError("Invalid or expired session token")
        return self.active[token]

    def logout(self, token: str) -> bool:
        token = strip_bearer(token)
        with self.lock:
            if token not in self.active:
                return False
            with self._get_db_connection() as conn:
                conn.execute("DELETE FROM sessions WHERE token = ?", (token,))
                conn.commit()
            del self.active[token]
            return True

    def email_for(self, user_id: str) -> Optional[str]:
        return self.emails.get(user_id)

class ProfileStore(SqliteStore):
    """Stores profiles, one row per registered user."""

    def _create_tables(self):
        with self._get_db_connection() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                full_name TEXT NOT NULL DEFAULT '',
                bio TEXT NOT NULL DEFAULT '',
                avatar_url TEXT NOT NULL DEFAULT '',
                institute TEXT NOT NULL DEFAULT '',
                course TEXT NOT NULL DEFAULT '',
                stream TEXT NOT NULL DEFAULT '',
                interests TEXT NOT NULL DEFAULT '[]',
                last_qualification TEXT NOT NULL DEFAULT '',
                aim TEXT NOT NULL DEFAULT '',
                study_hours TEXT NOT NULL DEFAULT '',
                preferred_content TEXT NOT NULL DEFAULT '',
                profile_completion INTEGER NOT NULL DEFAULT 0,
                donor_verified INTEGER NOT NULL DEFAULT 0,
                donor_amount REAL,
                donor_at TEXT,
                created_time TEXT NOT NULL
            )
            """)
            conn.commit()

    @staticmethod
    def _from_row(row) -> Profile:
        values = list(row)
        values[8] = json.loads(values[8] or "[]")
        values[14] = bool(values[14])
        return Profile(*values)

    def add(self, profile: Profile) -> Profile:
        with self.lock:
            with self._get_db_connection() as conn:
                conn.execute(
                    f"INSERT INTO profiles ({PROFILE_COLUMNS}) VALUES ({', '.join('?' * 18)})",
                    self._values(profile)
                )
                conn.commit()
        return profile

    def get(self, user_id: str) -> Optional[Profile]:
        with self._get_db_connection() as conn:
            row = conn.execute(
                f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = ?", (user_id,)
            ).fetchone()
            return self._from_row(row) if row else None

    def names(self) -> Dict[str, str]:
        """Map every user ID to its display name."""
        with self._get_db_connection() as conn:
            rows = conn.execute("SELECT id, full_name FROM profiles").fetchall()
            return {user_id: full_name for user_id, full_name in rows}

    def update(self, profile: Profile) -> bool:
        values = self._values(profile)
        with self.lock:
            with self._get_db_connection() as conn:
                try:
                    cursor = conn.execute(
                        "UPDATE profiles SET email=?, full_name=?, bio=?, avatar_url=?, institute=?, "
                        "course=?, stream=?, interests=?, last_qualification=?, aim=?, study_hours=?, "
                        "preferred_content=?, profile_completion=?, donor_verified=?, donor_amount=?, "
                        "donor_at=?, created_time=? WHERE id=?",
                        values[1:] + (profile.id,)
                    )
                    conn.commit()
                    return cursor.rowcount > 0
                except sqlite3.Error as e:
                    conn.rollback()
                    logger.error("Database error updating profile %s: %s", profile.id, e)
                    raise

    def count(self) -> int:
        with self._get_db_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM profiles").fetchone()[0]

    @staticmethod
    def _values(profile: Profile) -> Tuple:
        return (
            profile.id, profile.email, profile.full_name, profile.bio, profile.avatar_url,
            profile.institute, profile.course, profile.stream, json.dumps(profile.interests),
            profile.last_qualification, profile.aim, profile.study_hours,
            profile.preferred_content, profile.profile_completion, int(profile.donor_verified),
            profile.donor_amount, profile.donor_at, profile.created_time,
        )

class Storage(SqliteStore):
    """Stores and retrieves note metadata."""

    def _create_tables(self):
        with self._get_db_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                subject TEXT NOT NULL,
                tags TEXT NOT NULL DEFAULT '[]',
                file_name TEXT NOT NULL,
                file_url TEXT NOT NULL,
                download_count INTEGER NOT NULL DEFAULT 0,
                created_time TEXT NOT NULL,
                updated_time TEXT NOT NULL
            )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_notes_user_id ON notes(user_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_notes_created_time ON notes(created_time DESC)")
            conn.commit()

    @staticmethod
    def _from_row(row) -> Note:
        values = list(row)
        values[5] = json.loads(values[5] or "[]")
        return Note(*values)

    def add_note(self, note: Note) -> Note:
        with self.lock:
            with self._get_db_connection() as conn:
                try:
                    conn.execute(
                        f"INSERT INTO notes ({NOTE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (note.id, note.user_id, note.title, note.description, note.subject,
                         json.dumps(note.tags), note.file_name, note.file_url, note.download_count,
                         note.created_time, note.updated_time)
                    )
                    conn.commit()
                    logger.info("Note saved: %s", note.id)
                    return note
                except sqlite3.Error as e:
                    conn.rollback()
                    logger.error("Database error saving note: %s", e)
                    raise

    def list_notes(self) -> List[Note]:
        """All notes, newest first."""
        with self._get_db_connection() as conn:
            rows = conn.execute(
                f"SELECT {NOTE_COLUMNS} FROM notes ORDER BY created_time DESC, rowid DESC"
            ).fetchall()
            return [self._from_row(row) for row in rows]

    def list_user_notes(self, user_id: str) -> List[Note]:
        """One user's notes, most downloaded first."""
        with self._get_db_connection() as conn:
            rows = conn.execute(
                f"SELECT {NOTE_COLUMNS} FROM notes WHERE user_id=? "
                "ORDER BY download_count DESC, created_time DESC",
                (user_id,)
            ).fetchall()
            return [self._from_row(row) for row in rows]

    def get_note(self, note_id: str) -> Optional[Note]:
        with self._get_db_connection() as conn:
            row = conn.execute(
                f"SELECT {NOTE_COLUMNS} FROM notes WHERE id=?", (note_id,)
            ).fetchone()
            return self._from_row(row) if row else None

    def update_note(self, note: Note) -> bool:
        with self.lock:
            with self._get_db_connection() as conn:
                try:
                    cursor = conn.execute(
                        "UPDATE notes SET title=?, description=?, subject=?, tags=?, updated_time=? "
                        "WHERE id=? AND user_id=?",
                        (note.title, note.description, note.subject, json.dumps(note.tags),
                         note.updated_time, note.id, note.user_id)
                    )
                    conn.commit()
                    return cursor.rowcount > 0
                except sqlite3.Error as e:
                    conn.rollback()
                    logger.error("Database error updating note %s: %s", note.id, e)
                    raise

    def increment_downloads(self, note_id: str) -> bool:
        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.execute(
                    "UPDATE notes SET download_count = download_count + 1 WHERE id=?", (note_id,)
                )
                conn.commit()
                return cursor.rowcount > 0

    def delete_note(self, user_id: str, note_id: str) -> bool:
        with self.lock:
            with self._get_db_connection() as conn:
                cursor = conn.execute("DELETE FROM notes WHERE user_id=? AND id=?", (user_id, note_id))
                conn.commit()
                return cursor.rowcount > 0

    def count(self) -> int:
        with self._get_db_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0]

class FileStore:
    """Keeps uploaded note files on local disk under ``upload_dir``."""

    def __init__(self, upload_dir: str, max_bytes: int, url_prefix: str = "/uploads"):
        self.upload_dir = upload_dir
        self.max_bytes = max_bytes
        self.url_prefix = url_prefix
        os.makedirs(upload_dir, exist_ok=True)

    def save(self, original_name: str, content: bytes) -> Tuple[str, str]:
        """Write an upload and return ``(file_name, file_url)``."""
        ext = os.path.splitext(original_name)[1].lower()
        if ext not in ALLOWED_EXTENSIONS:
            raise ValueError(f"Unsupported file type. Allowed: {', '.join(ALLOWED_EXTENSIONS)}")
        if len(content) > self.max_bytes:
            raise UploadTooLarge(f"File exceeds the {self.max_bytes // (1024 * 1024)} MB limit")
        stored = f"{make_id('file')}{ext}"
        with open(os.path.join(self.upload_dir, stored), "wb") as fh:
            fh.write(content)
        return original_name, f"{self.url_prefix}/{stored}"

    def remove(self, file_url: str) -> None:
        name = os.path.basename(file_url)
        path = os.path.join(self.upload_dir, name)
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.warning("Stored file already missing: %s", path)

class CollegeStar:
    """
    Application logic: coordinates auth, profiles, notes and stored files.

    Every mutating operation takes the caller's session token and checks
    ownership before touching a record.
    """

    def __init__(self, auth: AuthService, profiles: ProfileStore, store: Storage, files: FileStore):
        self.auth = auth
        self.profiles = profiles
        self.store = store
        self.files = files

    def register_user(self, email: str, password: str, full_name: str = "") -> str:
        uid = self.auth.add_user(email, password)
        profile = Profile(uid, self.auth.email_for(uid), full_name=full_name.strip(), created_time=time_now())
        self.profiles.add(profile)
        logger.info("Registered user %s", uid)
        return uid

    def login(self, email: str, password: str) -> Tuple[str, str]:
        token = self.auth.login(email, password)
        return token, self.auth.validate(token)

    def logout(self, token: str) -> bool:
        return self.auth.logout(token)

    def current_user(self, token: str) -> Dict[str, str]:
        user_id = self.auth.validate(token)
        return {"id": user_id, "email": self.auth.email_for(user_id)}

    # Notes

    def list_notes(self) -> List[Dict[str, Any]]:
        names = self.profiles.names()
        return [note.to_dict(author_name=names.get(note.user_id, "")) for note in self.store.list_notes()]

    def list_user_notes(self, token: str, user_id: str) -> List[Note]:
        self.auth.validate(token)
        return self.store.list_user_notes(user_id)

    def get_note(self, note_id: str) -> Note:
        note = self.store.get_note(note_id)
        if not note:
            raise NotFoundError("Note not found")
        return note

    def add_note(self, token: str, title: str, subject: str, file_name: str, content: bytes,
                 description: str = "", tags: Any = None) -> Note:
        user_id = self.auth.validate(token)
        if not title.strip():
            raise ValueError("Note title cannot be empty")
        if not subject.strip():
            raise ValueError("Note subject cannot be empty")
        if not file_name:
            raise ValueError("A file is required")
        tag_list = parse_tags(tags)
        stored_name, file_url = self.files.save(file_name, content)
        now = time_now()
        note = Note(make_id("note"), user_id, title.strip(), (description or "").strip(),
                    subject.strip(), tag_list, stored_name, file_url, 0, now, now)
        return self.store.add_note(note)

    def update_note(self, token: str, note_id: str, changes: Dict[str, Any]) -> Note:
        user_id = self.auth.validate(token)
        note = self.get_note(note_id)
        if note.user_id != user_id:
            raise PermissionDenied("You can only edit your own notes")
        if "title" in changes and changes["title"] is not None:
            if not changes["title"].strip():
                raise ValueError("Note title cannot be empty")
            note.title = changes["title"].strip()
        if "subject" in changes and changes["subject"] is not None:
            if not changes["subject"].strip():
                raise ValueError("Note subject cannot be empty")
            note.subject = changes["subject"].strip()
        if changes.get("description") is not None:
            note.description = changes["description"].strip()
        if changes.get("tags") is not None:
            note.tags = parse_tags(changes["tags"])
        note.updated_time = time_now()
        if not self.store.update_note(note):
            raise ValueError("Failed to update note")
        return note

    def record_download(self, note_id: str) -> Note:
        if not self.store.increment_downloads(note_id):
            raise NotFoundError("Note not found")
        return self.get_note(note_id)

    def delete_note(self, token: str, note_id: str) -> bool:
        user_id = self.auth.validate(token)
        note = self.get_note(note_id)
        if note.user_id != user_id:
            raise PermissionDenied("You can only delete your own notes")
        deleted = self.store.delete_note(user_id, note_id)
        if deleted:
            self.files.remove(note.file_url)
        return deleted

    # Profiles

    def get_profile(self, user_id: str) -> Profile:
        profile = self.profiles.get(user_id)
        if not profile:
            raise NotFoundError("Profile not found")
        return profile

    def update_profile(self, token: str, user_id: str, changes: Dict[str, Any]) -> Profile:
        """
        Apply a partial profile update for the signed-in user.

        Completion is recomputed from the resulting fields. The donor flag
        can be raised but never cleared; raising it stamps ``donor_at`` when
        the caller did not send one.
        """
        if self.auth.validate(token) != user_id:
            raise PermissionDenied("You can only edit your own profile")
        profile = self.get_profile(user_id)
        for field in PROFILE_TEXT_FIELDS:
            if changes.get(field) is not None:
                setattr(profile, field, str(changes[field]).strip())
        if changes.get("interests") is not None:
            profile.interests = parse_tags(changes["interests"])
        if changes.get("donor_verified") and not profile.donor_verified:
            profile.donor_verified = True
            profile.donor_amount = changes.get("donor_amount")
            profile.donor_at = changes.get("donor_at") or time_now()
            logger.info("User %s marked as donor (amount=%s)", user_id, profile.donor_amount)
        profile.profile_completion = profile.completion_percent()
        self.profiles.update(profile)
        return profile
