"""Shared fixtures: an in-memory CardDAV server and a sync engine wired to it."""

from __future__ import annotations

import re
from datetime import timedelta

import pytest

from py_cardsync.carddav import AddressBook, VCard
from py_cardsync.config import Settings
from py_cardsync.encryption import encrypt_password
from py_cardsync.internal import HTTPError
from py_cardsync.models import Connection, Contact, ContactPhone, Mapping, SyncStatus, utcnow
from py_cardsync.store import MemoryPhotoStore, MemoryRecordStore
from py_cardsync.sync import SyncEngine

SECRET_KEY = "test-secret-key"
BOOK_URL = "https://dav.example.com/addressbooks/alice/contacts/"


def make_vcard(uid: str, given: str, family: str = "", tel: str | None = None, version: str = "3.0") -> str:
    """Minimal vCard as a server would store it."""
    full_name = " ".join(p for p in (given, family) if p)
    lines = [
        "BEGIN:VCARD",
        f"VERSION:{version}",
        f"UID:{uid}",
        f"FN:{full_name}",
        f"N:{family};{given};;;",
    ]
    if tel:
        lines.append(f"TEL;TYPE=CELL:{tel}")
    lines.append("END:VCARD")
    return "\r\n".join(lines) + "\r\n"


class FakeServer:
    """Address book state shared by every FakeClient of one account."""

    def __init__(self, book_url: str = BOOK_URL) -> None:
        self.book = AddressBook(url=book_url, display_name="Contacts")
        self.cards: dict[str, VCard] = {}
        self.requests: list[tuple[str, str]] = []
        self.has_book = True
        self.discovery_error: Exception | None = None
        # Simulate providers that assign their own URL and UID on creation
        self.rewrite_on_create = False
        self.on_create = None
        self._etag_counter = 0

    def next_etag(self) -> str:
        self._etag_counter += 1
        return f'"etag-{self._etag_counter}"'

    def put(self, name: str, data: str, etag: str | None = None) -> VCard:
        """Store a card directly, as if another client had written it."""
        url = f"{self.book.url}{name}"
        card = VCard(url=url, etag=etag or self.next_etag(), data=data)
        self.cards[url] = card
        return card

    def card_for_uid(self, uid: str) -> VCard | None:
        for card in self.cards.values():
            if re.search(rf"^UID:{re.escape(uid)}\r?$", card.data, re.MULTILINE):
                return card
        return None


class FakeClient:
    """Stands in for CardDAVClient, backed by a FakeServer."""

    def __init__(self, server: FakeServer) -> None:
        self.server = server

    async def __aenter__(self) -> FakeClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        pass

    async def discover_address_books(self) -> list[AddressBook]:
        self.server.requests.append(("PROPFIND", self.server.book.url))
        if self.server.discovery_error is not None:
            raise self.server.discovery_error
        return [self.server.book] if self.server.has_book else []

    async def list_vcards(self, address_book: AddressBook) -> list[VCard]:
        self.server.requests.append(("REPORT", address_book.url))
        return [VCard(url=c.url, etag=c.etag, data=c.data) for c in self.server.cards.values()]

    async def create_vcard(self, address_book: AddressBook, vcard_data: str, filename: str) -> VCard:
        url = f"{address_book.url}{filename}"
        self.server.requests.append(("PUT", url))
        if url in self.server.cards:
            raise HTTPError(412)

        if self.server.on_create is not None:
            await self.server.on_create()

        if self.server.rewrite_on_create:
            number = len(self.server.cards) + 1
            data = re.sub(r"^UID:.*$", f"UID:server-{number}\r", vcard_data, flags=re.MULTILINE)
            self.server.put(f"server-{number}.vcf", data)
            # The provider answers as if the requested name had been kept
            return VCard(url=url, etag="", data=vcard_data)

        card = self.server.put(filename, vcard_data)
        return VCard(url=card.url, etag=card.etag, data=vcard_data)

    async def update_vcard(self, existing: VCard, vcard_data: str) -> VCard:
        self.server.requests.append(("PUT", existing.url))
        current = self.server.cards.get(existing.url)
        if current is None:
            raise HTTPError(404)
        if existing.etag and existing.etag != current.etag:
            raise HTTPError(412)
        card = VCard(url=existing.url, etag=self.server.next_etag(), data=vcard_data)
        self.server.cards[existing.url] = card
        return card

    async def delete_vcard(self, existing: VCard) -> None:
        self.server.requests.append(("DELETE", existing.url))
        if existing.url not in self.server.cards:
            raise HTTPError(404)
        del self.server.cards[existing.url]


@pytest.fixture
def settings():
    return Settings(secret_key=SECRET_KEY, retry_initial_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def photos():
    return MemoryPhotoStore()


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def engine(store, server, photos, settings):
    return SyncEngine(store, lambda connection: FakeClient(server), photos=photos, settings=settings)


@pytest.fixture
async def connection(store):
    conn = Connection(
        user_id="alice",
        server_url="https://dav.example.com/",
        username="alice",
        password=encrypt_password("hunter2", SECRET_KEY),
    )
    await store.save_connection(conn)
    return conn


async def add_mapped_contact(
    store: MemoryRecordStore,
    server: FakeServer,
    connection: Connection,
    uid: str = "uid-1",
    name: str = "John",
    surname: str = "Doe",
    local_change: bool = False,
) -> tuple[Contact, Mapping]:
    """A contact that was synced once, with the matching card on the server."""
    contact = await store.create_contact(
        Contact(
            user_id=connection.user_id,
            uid=uid,
            name=name,
            surname=surname,
            phone_numbers=[ContactPhone(type="mobile", number="+1 555 0100")],
        )
    )
    card = server.put(f"{uid}.vcf", make_vcard(uid, name, surname, tel="+1 555 0100"))

    synced_at = utcnow() - timedelta(hours=1)
    mapping = Mapping(
        connection_id=connection.id,
        contact_id=contact.id,
        uid=uid,
        href=card.url,
        etag=card.etag,
        sync_status=SyncStatus.SYNCED,
        last_synced_at=synced_at,
        last_local_change=synced_at + timedelta(minutes=30) if local_change else synced_at - timedelta(minutes=5),
    )
    await store.save_mapping(mapping)
    return contact, mapping
