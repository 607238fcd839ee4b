from typing import Iterable, List, Optional

import config
from contact_store import ContactStore
from db_models import Contact, ContactResponse, IdentifyRequest, LinkPrecedence
from errors import InvariantError, NotFoundError, ValidationError
from key_locks import KeyedLocks, identity_keys
from logger import get_logger

logger = get_logger(__name__)


def is_covered(contacts: Iterable[Contact], email: str = None, phone: str = None) -> bool:
    """Each supplied value appears on some contact, not necessarily the same one."""
    contacts = list(contacts)
    if email and not any(c.email == email for c in contacts):
        return False
    if phone and not any(c.phone_number == phone for c in contacts):
        return False
    return True


def needs_new_secondary(cluster: Iterable[Contact], email: str = None, phone: str = None) -> bool:
    """With both values supplied, only a member carrying the exact pair counts as a match."""
    cluster = list(cluster)
    if email and phone:
        return not any(c.email == email and c.phone_number == phone for c in cluster)
    if email:
        return not any(c.email == email for c in cluster)
    return not any(c.phone_number == phone for c in cluster)


def _distinct(values: Iterable[Optional[str]]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def _move_to_front(values: List[str], value: Optional[str]):
    if value and values and values[0] != value:
        index = values.index(value)
        values[0], values[index] = values[index], values[0]


class Reconciler:
    """Identifies a customer from an email and/or phone and keeps the contact graph linked."""

    def __init__(self, store: ContactStore, cascade: bool = None, locks: KeyedLocks = None):
        self.store = store
        self.cascade = config.CASCADE_MERGE if cascade is None else cascade
        self.locks = locks if locks is not None else KeyedLocks()

    def identify(self, request: IdentifyRequest) -> ContactResponse:
        email = request.email or None
        phone = request.phoneNumber or None

        if not email and not phone:
            raise ValidationError("Either email or phoneNumber must be provided")

        logger.info("Processing identify request (email=%s, phone=%s)", email, phone)

        # the transaction also orders this call against merges sharing no key with it
        with self.locks.hold(identity_keys(email, phone)):
            with self.store.transaction():
                return self._identify(email, phone)

    def _identify(self, email: Optional[str], phone: Optional[str]) -> ContactResponse:
        matches = self.store.find_by_value(email, phone)

        if not matches:
            return self._create_primary(email, phone)

        primaries = [c for c in matches if c.is_primary]

        if len(primaries) > 1:
            return self._merge_primaries(primaries, email, phone)

        if primaries:
            anchor = primaries[0]
        else:
            anchor = self.resolve_primary(matches[0].linked_id)

        cluster = self.store.find_cluster(anchor.id)

        if needs_new_secondary(cluster, email, phone):
            self.store.create(email, phone, anchor.id, LinkPrecedence.SECONDARY)
        else:
            logger.debug("Request already represented in cluster %s", anchor.id)

        return self.consolidate(anchor.id)

    def _create_primary(self, email: Optional[str], phone: Optional[str]) -> ContactResponse:
        contact = self.store.create(email, phone, None, LinkPrecedence.PRIMARY)

        return ContactResponse(
            primaryContactId=contact.id,
            emails=[contact.email] if contact.email else [],
            phoneNumbers=[contact.phone_number] if contact.phone_number else [],
            secondaryContactIds=[],
        )

    def _merge_primaries(self, primaries: List[Contact], email: Optional[str], phone: Optional[str]) -> ContactResponse:
        ordered = sorted(primaries, key=lambda c: c.sort_key)
        survivor, others = ordered[0], ordered[1:]

        logger.info("Merging primaries %s into %s", [c.id for c in others], survivor.id)

        with self.store.transaction():
            for other in others:
                self.store.demote(other.id, survivor.id)
                if self.cascade:
                    self.store.relink_children(other.id, survivor.id)

            # coverage is judged against the primaries as they were before demotion
            if not is_covered(ordered, email, phone):
                self.store.create(email, phone, survivor.id, LinkPrecedence.SECONDARY)

        return self.consolidate(survivor.id)

    def resolve_primary(self, contact_id: int) -> Contact:
        """Follow linked_id upwards until a primary row is reached.

        More than one hop only happens for secondaries left behind when their
        primary was demoted without cascading.
        """
        visited = set()
        current = contact_id

        while current is not None:
            if current in visited:
                raise InvariantError(f"Link cycle through contact {current}")
            visited.add(current)

            contact = next((c for c in self.store.find_cluster(current) if c.id == current), None)
            if contact is None:
                raise NotFoundError(f"Linked contact {current} does not exist")
            if contact.is_primary:
                return contact

            logger.warning("Contact %s is secondary but still has secondaries; following link to %s",
                           contact.id, contact.linked_id)
            current = contact.linked_id

        raise InvariantError(f"Secondary contact {contact_id} has no linked primary")

    def consolidate(self, primary_id: int) -> ContactResponse:
        cluster = self.store.find_cluster(primary_id)

        primary = next((c for c in cluster if c.id == primary_id), None)
        if primary is None:
            raise NotFoundError(f"Primary contact {primary_id} does not exist")
        if not primary.is_primary:
            raise InvariantError(f"Contact {primary_id} is not a primary contact")

        secondaries = sorted(
            (c for c in cluster if c.link_precedence == LinkPrecedence.SECONDARY),
            key=lambda c: c.sort_key,
        )

        emails = _distinct([primary.email] + [c.email for c in secondaries])
        phone_numbers = _distinct([primary.phone_number] + [c.phone_number for c in secondaries])

        _move_to_front(emails, primary.email)
        _move_to_front(phone_numbers, primary.phone_number)

        return ContactResponse(
            primaryContactId=primary.id,
            emails=emails,
            phoneNumbers=phone_numbers,
            secondaryContactIds=[c.id for c in secondaries],
        )
