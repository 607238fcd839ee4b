import sqlite3
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import List, Optional

import config
from db_models import Contact, LinkPrecedence
from db_setup import get_db_connection, init_db
from errors import InvariantError, NotFoundError, StoreError
from logger import get_logger

logger = get_logger(__name__)

COLUMNS = "id, phone_number, email, linked_id, link_precedence, created_at, updated_at, deleted_at"


def to_db_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def row_to_contact(row) -> Contact:
    return Contact(
        id=row["id"],
        email=row["email"],
        phone_number=row["phone_number"],
        linked_id=row["linked_id"],
        link_precedence=row["link_precedence"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        deleted_at=datetime.fromisoformat(row["deleted_at"]) if row["deleted_at"] else None,
    )


class ContactStore:
    """Storage contract consumed by the reconciler.

    Every read returns non-deleted rows ordered by (created_at, id).
    """

    def find_by_value(self, email: str = None, phone: str = None) -> List[Contact]:
        raise NotImplementedError

    def find_cluster(self, anchor_id: int) -> List[Contact]:
        raise NotImplementedError

    def create(
        self,
        email: str = None,
        phone: str = None,
        linked_id: int = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        *,
        contact_id: int = None,
        created_at: datetime = None,
    ) -> Contact:
        raise NotImplementedError

    def demote(self, contact_id: int, new_primary_id: int) -> Contact:
        raise NotImplementedError

    def relink_children(self, old_parent_id: int, new_parent_id: int) -> int:
        raise NotImplementedError

    def transaction(self):
        """Group calls atomically. Stores without transactions get a no-op."""
        return nullcontext()


class SqliteContactStore(ContactStore):

    def __init__(self, db_path: str = None):
        self.db_path = db_path or config.DB_NAME
        self._local = threading.local()

    def init_schema(self):
        init_db(self.db_path)

    @contextmanager
    def transaction(self):
        if getattr(self._local, "conn", None) is not None:
            yield
            return

        conn = get_db_connection(self.db_path)
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            conn.close()
            raise StoreError(f"Could not open transaction: {e}") from e

        self._local.conn = conn
        try:
            yield
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    @contextmanager
    def _connection(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return

        conn = get_db_connection(self.db_path)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _select(self, where: str, params) -> List[Contact]:
        query = f"""
            SELECT {COLUMNS} FROM contacts
            WHERE deleted_at IS NULL AND ({where})
            ORDER BY created_at ASC, id ASC
        """
        try:
            with self._connection() as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as e:
            logger.error("Contact lookup failed: %s", e)
            raise StoreError(f"Contact lookup failed: {e}") from e
        logger.debug("Query matched %d contacts (%s)", len(rows), where)
        return [row_to_contact(row) for row in rows]

    def find_by_value(self, email: str = None, phone: str = None) -> List[Contact]:
        conditions = []
        params = []

        if email:
            conditions.append("email = ?")
            params.append(email)

        if phone:
            conditions.append("phone_number = ?")
            params.append(phone)

        if not conditions:
            return []

        return self._select(" OR ".join(conditions), params)

    def find_cluster(self, anchor_id: int) -> List[Contact]:
        return self._select("id = ? OR linked_id = ?", (anchor_id, anchor_id))

    def _get(self, conn, contact_id: int) -> Optional[Contact]:
        row = conn.execute(f"SELECT {COLUMNS} FROM contacts WHERE id = ?", (contact_id,)).fetchone()
        return row_to_contact(row) if row else None

    def create(
        self,
        email: str = None,
        phone: str = None,
        linked_id: int = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        *,
        contact_id: int = None,
        created_at: datetime = None,
    ) -> Contact:
        now = to_db_timestamp(datetime.now())
        created = to_db_timestamp(created_at) if created_at else now
        precedence = LinkPrecedence(precedence)

        try:
            with self._connection() as conn:
                if contact_id:
                    conn.execute("""
                        INSERT INTO contacts (id, phone_number, email, linked_id, link_precedence, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, (contact_id, phone, email, linked_id, precedence.value, created, now))
                    new_id = contact_id
                else:
                    cursor = conn.execute("""
                        INSERT INTO contacts (phone_number, email, linked_id, link_precedence, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (phone, email, linked_id, precedence.value, created, now))
                    new_id = cursor.lastrowid
                contact = self._get(conn, new_id)
        except sqlite3.Error as e:
            logger.error("Error creating contact (email=%s, phone=%s, linked_id=%s): %s",
                         email, phone, linked_id, e)
            raise StoreError(f"Could not create contact: {e}") from e

        logger.info("Contact created: id=%s precedence=%s linked_id=%s",
                    contact.id, contact.link_precedence.value, contact.linked_id)
        return contact

    def demote(self, contact_id: int, new_primary_id: int) -> Contact:
        now = to_db_timestamp(datetime.now())

        try:
            with self._connection() as conn:
                cursor = conn.execute("""
                    UPDATE contacts
                    SET linked_id = ?, link_precedence = 'secondary', updated_at = ?
                    WHERE id = ? AND deleted_at IS NULL
                """, (new_primary_id, now, contact_id))
                if cursor.rowcount == 0:
                    raise NotFoundError(f"Contact {contact_id} not found or already deleted")
                contact = self._get(conn, contact_id)
        except sqlite3.Error as e:
            logger.error("Error demoting contact %s under %s: %s", contact_id, new_primary_id, e)
            raise StoreError(f"Could not demote contact {contact_id}: {e}") from e

        logger.info("Contact demoted: id=%s linked_id=%s", contact_id, new_primary_id)
        return contact

    def relink_children(self, old_parent_id: int, new_parent_id: int) -> int:
        now = to_db_timestamp(datetime.now())

        try:
            with self._connection() as conn:
                cursor = conn.execute("""
                    UPDATE contacts
                    SET linked_id = ?, updated_at = ?
                    WHERE linked_id = ? AND link_precedence = 'secondary' AND deleted_at IS NULL
                """, (new_parent_id, now, old_parent_id))
                moved = cursor.rowcount
        except sqlite3.Error as e:
            logger.error("Error relinking children of %s to %s: %s", old_parent_id, new_parent_id, e)
            raise StoreError(f"Could not relink children of {old_parent_id}: {e}") from e

        if moved:
            logger.info("Relinked %d secondaries from %s to %s", moved, old_parent_id, new_parent_id)
        return moved


class CheckedContactStore(ContactStore):
    """Wraps a store and rejects reads and writes that break the primary/secondary graph rules."""

    def __init__(self, inner: ContactStore):
        self.inner = inner

    def transaction(self):
        return self.inner.transaction()

    @staticmethod
    def _check_order(contacts: List[Contact], what: str):
        keys = [c.sort_key for c in contacts]
        if keys != sorted(keys):
            raise InvariantError(f"{what} returned contacts out of (created_at, id) order")

    def _primary(self, contact_id: int, role: str) -> Contact:
        anchor = next((c for c in self.inner.find_cluster(contact_id) if c.id == contact_id), None)
        if anchor is None:
            raise NotFoundError(f"{role} contact {contact_id} does not exist")
        if not anchor.is_primary:
            raise InvariantError(f"{role} contact {contact_id} is not primary")
        return anchor

    def find_by_value(self, email: str = None, phone: str = None) -> List[Contact]:
        contacts = self.inner.find_by_value(email, phone)
        self._check_order(contacts, "find_by_value")
        return contacts

    def find_cluster(self, anchor_id: int) -> List[Contact]:
        cluster = self.inner.find_cluster(anchor_id)
        self._check_order(cluster, "find_cluster")

        anchor = next((c for c in cluster if c.id == anchor_id), None)
        if anchor is not None and anchor.is_primary:
            for member in cluster:
                if member.id == anchor_id:
                    continue
                if member.is_primary:
                    raise InvariantError(f"Cluster {anchor_id} holds a second primary {member.id}")
                if member.linked_id != anchor_id:
                    raise InvariantError(f"Contact {member.id} is not linked to {anchor_id}")
        return cluster

    def create(
        self,
        email: str = None,
        phone: str = None,
        linked_id: int = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        *,
        contact_id: int = None,
        created_at: datetime = None,
    ) -> Contact:
        precedence = LinkPrecedence(precedence)
        if not email and not phone:
            raise InvariantError("A contact needs an email or a phone number")
        if precedence == LinkPrecedence.PRIMARY and linked_id is not None:
            raise InvariantError("A primary contact cannot be linked")
        if precedence == LinkPrecedence.SECONDARY:
            if linked_id is None:
                raise InvariantError("A secondary contact must be linked")
            self._primary(linked_id, "Link target")

        return self.inner.create(email, phone, linked_id, precedence,
                                 contact_id=contact_id, created_at=created_at)

    def demote(self, contact_id: int, new_primary_id: int) -> Contact:
        if contact_id == new_primary_id:
            raise InvariantError(f"Contact {contact_id} cannot be linked to itself")
        self._primary(new_primary_id, "Surviving")
        return self.inner.demote(contact_id, new_primary_id)

    def relink_children(self, old_parent_id: int, new_parent_id: int) -> int:
        self._primary(new_parent_id, "Surviving")
        return self.inner.relink_children(old_parent_id, new_parent_id)
