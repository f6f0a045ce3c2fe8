"""Tests for vCard encoding."""

from datetime import date

import pytest

from py_cardsync.models import (
    Contact,
    ContactAddress,
    ContactCustomField,
    ContactEmail,
    ContactIM,
    ContactLocation,
    ContactPhone,
    ContactUrl,
    ImportantDate,
    Relationship,
)
from py_cardsync.sync.engine import contact_from_parsed
from py_cardsync.vcard import (
    UNKNOWN_YEAR,
    VCardOptions,
    contact_to_vcard,
    contacts_to_vcards,
    format_full_name,
    format_vcard_date,
    parse_vcard,
)
from py_cardsync.vcard.generator import format_types
from py_cardsync.vcard.text import escape_text, fold_line, split_escaped, strip_markdown, unescape_text


def make_contact(**kwargs) -> Contact:
    values = {
        "user_id": "alice",
        "uid": "gen-1",
        "name": "Jane",
        "surname": "Roe",
        "phone_numbers": [ContactPhone(type="mobile", number="+1 555 0100")],
        "emails": [ContactEmail(type="work", email="jane@example.com")],
    }
    values.update(kwargs)
    return Contact(**values)


def lines_of(vcard: str) -> list[str]:
    return vcard.split("\r\n")


def test_format_full_name():
    contact = make_contact(prefix="Dr.", middle_name="Q", second_last_name="López", suffix="PhD")

    assert format_full_name(contact) == "Dr. Jane Q Roe López PhD"
    assert format_full_name(Contact(nickname="JJ")) == "JJ"
    assert format_full_name(Contact()) == "Unknown"


def test_v3_basic_structure():
    vcard = contact_to_vcard(make_contact())
    lines = lines_of(vcard)

    assert vcard.endswith("END:VCARD\r\n")
    assert lines[:4] == ["BEGIN:VCARD", "VERSION:3.0", "UID:gen-1", "FN:Jane Roe"], f"lines = {lines[:4]}"
    assert "N:Roe;Jane;;;" in lines
    assert "TEL;TYPE=CELL:+1 555 0100" in lines
    assert "EMAIL;TYPE=WORK:jane@example.com" in lines


def test_v4_uses_lowercase_types_and_native_properties():
    contact = make_contact(
        gender="F",
        last_contact=date(2024, 1, 20),
        locations=[ContactLocation(type="home", latitude=40.5, longitude=-3.5)],
    )

    lines = lines_of(contact_to_vcard(contact, VCardOptions(version="4.0")))

    assert "VERSION:4.0" in lines
    assert "TEL;TYPE=mobile:+1 555 0100" in lines
    assert "GENDER:F" in lines
    assert "ANNIVERSARY;TYPE=last-contact:2024-01-20" in lines
    assert "item1.GEO:geo:40.5,-3.5" in lines
    assert "item1.X-ABLabel:home" in lines


def test_v3_uses_extension_properties():
    contact = make_contact(gender="F", last_contact=date(2024, 1, 20))

    lines = lines_of(contact_to_vcard(contact))

    assert "X-GENDER:F" in lines
    assert "X-NAMETAG-LAST-CONTACT:20240120" in lines


def test_dates_per_version():
    """Birthdays become BDAY; year-less dates drop the year."""
    contact = make_contact(
        important_dates=[
            ImportantDate(title="Birthday", date=date(UNKNOWN_YEAR, 3, 15)),
            ImportantDate(title="Wedding", date=date(2010, 6, 1)),
        ]
    )

    v3 = lines_of(contact_to_vcard(contact))
    v4 = lines_of(contact_to_vcard(contact, VCardOptions(version="4.0")))

    assert "BDAY:--0315" in v3
    assert "BDAY:--03-15" in v4
    assert "item1.X-ABDATE:20100601" in v3
    assert "item1.X-ABLabel:Wedding" in v3
    assert "X-ANNIVERSARY;TYPE=WEDDING:20100601" in v3
    assert "item1.X-ABDATE;VALUE=date-and-or-time:2010-06-01" in v4
    assert "ANNIVERSARY;TYPE=wedding:2010-06-01" in v4


def test_format_vcard_date():
    assert format_vcard_date(date(1985, 4, 12)) == "19850412"
    assert format_vcard_date(date(1985, 4, 12), "4.0") == "1985-04-12"
    assert format_vcard_date(date(UNKNOWN_YEAR, 2, 29)) == "--0229"
    assert format_vcard_date(date(1600, 2, 1), "4.0") == "--02-01"


def test_format_types():
    assert format_types(["work", "voice"], "3.0") == "WORK,VOICE"
    assert format_types(["WORK", "voice"], "4.0") == '"work,voice"'
    assert format_types(["home"], "4.0") == "home"
    assert format_types(["My Label"], "3.0") == '"MY LABEL"'


def test_address_urls_and_im_use_item_groups():
    contact = make_contact(
        addresses=[ContactAddress(type="home", street_line1="1 Main St", street_line2="Apt 2", locality="Springfield")],
        urls=[ContactUrl(type="blog", url="https://jane.example.com")],
        im_handles=[ContactIM(protocol="XMPP", handle="jane@example.org")],
    )

    lines = lines_of(contact_to_vcard(contact))

    assert "ADR;TYPE=HOME:;;1 Main St\\nApt 2;Springfield;;;" in lines
    assert "item1.URL:https://jane.example.com" in lines
    assert "item1.X-ABLabel:blog" in lines
    assert "item2.IMPP:xmpp:jane@example.org" in lines
    assert "item2.X-ABLabel:XMPP" in lines


def test_photo_encoding_per_version():
    contact = make_contact(photo="data:image/png;base64,iVBORw0KGgo=")

    v3 = lines_of(contact_to_vcard(contact))
    v4 = lines_of(contact_to_vcard(contact, VCardOptions(version="4.0")))
    without = contact_to_vcard(contact, VCardOptions(include_photo=False))

    assert "PHOTO;ENCODING=b;TYPE=PNG:iVBORw0KGgo=" in v3
    assert "PHOTO:data:image/png;base64,iVBORw0KGgo=" in v4
    assert "PHOTO" not in without


def test_photo_override_and_url():
    contact = make_contact(photo="photos/abc.jpg")

    lines = lines_of(contact_to_vcard(contact, photo="https://cdn.example.com/abc.jpg"))

    assert "PHOTO;VALUE=uri:https://cdn.example.com/abc.jpg" in lines


def test_notes_are_escaped_and_optionally_stripped():
    contact = make_contact(notes="**Bold**, then; a [link](https://x.example)\nsecond line")

    plain = lines_of(contact_to_vcard(contact))
    stripped = lines_of(contact_to_vcard(contact, VCardOptions(strip_markdown=True)))

    assert "NOTE:**Bold**\\, then\\; a [link](https://x.example)\\nsecond line" in plain
    assert "NOTE:Bold\\, then\\; a link\\nsecond line" in stripped


def test_groups_relationships_and_nametag():
    contact = make_contact(
        groups=["Friends", "Book, Club"],
        relationships=[Relationship(related_contact_id="c2", relationship_type_id="t1", related_uid="friend-uid")],
        second_last_name="López",
        contact_reminder_enabled=True,
        contact_reminder_interval=2,
        contact_reminder_interval_unit="weeks",
    )

    vcard = contact_to_vcard(contact)
    lines = lines_of(vcard)

    assert "CATEGORIES:Friends,Book\\, Club" in lines
    assert "RELATED:urn:uuid:friend-uid" in lines
    assert "N:Roe López;Jane;;;" in lines
    assert "X-NAMETAG-SECOND-LASTNAME:López" in lines
    assert "X-NAMETAG-CONTACT-REMINDER:enabled" in lines
    assert "X-NAMETAG-REMINDER-INTERVAL:2 weeks" in lines
    assert 'X-NAMETAG-RELATIONSHIPS:[{"personId":"c2"\\,"typeId":"t1"\\,"notes":null}]' in lines

    no_extras = contact_to_vcard(contact, VCardOptions(include_nametag=False, include_relationships=False))
    assert "X-NAMETAG" not in no_extras
    assert "RELATED" not in no_extras


def test_custom_fields():
    """Producer metadata is dropped, known X- names are skipped, others are prefixed."""
    contact = make_contact(
        custom_fields=[
            ContactCustomField(key="PRODID", value="-//Other//EN"),
            ContactCustomField(key="ROLE", value="Lead"),
            ContactCustomField(key="favorite-color", value="blue"),
            ContactCustomField(key="X-GENDER", value="F"),
            ContactCustomField(key="X-ABRELATEDNAMES", value="Sam", type="sister"),
            ContactCustomField(key="favorite-color", value="blue"),
        ]
    )

    vcard = contact_to_vcard(contact)
    lines = lines_of(vcard)

    assert "PRODID" not in vcard
    assert "ROLE:Lead" in lines
    assert lines.count("X-FAVORITE-COLOR:blue") == 1
    assert "X-GENDER" not in vcard
    assert "item1.X-ABRELATEDNAMES:Sam" in lines
    assert "item1.X-ABLabel:sister" in lines


def test_long_lines_are_folded():
    contact = make_contact(notes="x" * 200)

    vcard = contact_to_vcard(contact)

    for line in lines_of(vcard):
        assert len(line) <= 75, f"line of {len(line)} chars: {line!r}"
    assert parse_vcard(vcard).notes == "x" * 200


def test_generated_uid_when_missing():
    vcard = contact_to_vcard(make_contact(uid=None))

    assert parse_vcard(vcard).uid


def test_contacts_to_vcards():
    text = contacts_to_vcards([make_contact(uid="a"), make_contact(uid="b")])

    assert text.count("BEGIN:VCARD") == 2


def full_contact() -> Contact:
    return make_contact(
        middle_name="Q",
        prefix="Dr.",
        suffix="PhD",
        second_last_name="López",
        nickname="JJ",
        organization="Acme",
        job_title="Engineer",
        gender="F",
        notes="Line one, with; escapes\nline two\\end",
        last_contact=date(2024, 1, 20),
        contact_reminder_enabled=True,
        contact_reminder_interval=3,
        contact_reminder_interval_unit="months",
        photo="data:image/png;base64,iVBORw0KGgo=",
        groups=["Friends", "Book, Club"],
        relationships=[Relationship(related_contact_id="c2", relationship_type_id="t1", related_uid="friend-uid")],
        phone_numbers=[
            ContactPhone(type="mobile", number="+1 555 0100"),
            ContactPhone(type="work", number="+1 555 0199"),
        ],
        emails=[
            ContactEmail(type="work", email="jane@example.com"),
            ContactEmail(type="home", email="jane@home.example"),
        ],
        addresses=[
            ContactAddress(
                type="work",
                street_line1="2 Side St",
                street_line2="Floor 3",
                locality="Springfield",
                region="IL",
                postal_code="62701",
                country="USA",
            )
        ],
        urls=[ContactUrl(type="blog", url="https://jane.example.com/posts")],
        im_handles=[ContactIM(protocol="xmpp", handle="jane@example.org")],
        locations=[ContactLocation(type="home", latitude=40.5, longitude=-3.25)],
        custom_fields=[
            ContactCustomField(key="ROLE", value="Lead"),
            ContactCustomField(key="X-FAVORITE-COLOR", value="blue"),
            ContactCustomField(key="X-ABRELATEDNAMES", value="Sam", type="sister"),
        ],
        important_dates=[
            ImportantDate(title="Birthday", date=date(1990, 5, 17)),
            ImportantDate(title="Wedding", date=date(2010, 6, 1)),
            ImportantDate(title="First met, Paris", date=date(2015, 9, 30)),
            ImportantDate(title="Name day", date=date(UNKNOWN_YEAR, 3, 15)),
        ],
    )


@pytest.mark.parametrize("version", ["3.0", "4.0"])
def test_encode_then_decode_keeps_fields(version):
    """Every field of a fully populated contact survives encode then decode."""
    contact = full_contact()

    parsed = parse_vcard(contact_to_vcard(contact, VCardOptions(version=version)))

    assert parsed.uid == "gen-1"
    names = (parsed.prefix, parsed.name, parsed.middle_name, parsed.surname, parsed.second_last_name, parsed.suffix)
    assert names == ("Dr.", "Jane", "Q", "Roe", "López", "PhD"), f"names = {names}"
    assert parsed.nickname == "JJ"
    assert parsed.organization == "Acme"
    assert parsed.job_title == "Engineer"
    assert parsed.gender == "F"
    assert parsed.notes == contact.notes
    assert parsed.last_contact == contact.last_contact
    assert parsed.photo == contact.photo
    assert parsed.categories == contact.groups
    assert parsed.related_uids == ["friend-uid"]
    assert parsed.relationships == [{"personId": "c2", "typeId": "t1", "notes": None}]
    assert parsed.contact_reminder_enabled is True
    assert (parsed.contact_reminder_interval, parsed.contact_reminder_interval_unit) == (3, "months")

    for kind in (
        "phone_numbers",
        "emails",
        "addresses",
        "urls",
        "im_handles",
        "locations",
        "custom_fields",
        "important_dates",
    ):
        got, expected = getattr(parsed, kind), getattr(contact, kind)
        assert got == expected, f"{kind} GOT {got}, expected {expected}"
    assert parsed.unknown_properties == [], [p.name for p in parsed.unknown_properties]


@pytest.mark.parametrize("version", ["3.0", "4.0"])
def test_date_title_with_comma_is_not_duplicated(version):
    contact = make_contact(important_dates=[ImportantDate(title="First met, Paris", date=date(2010, 6, 1))])

    vcard = contact_to_vcard(contact, VCardOptions(version=version))
    parsed = parse_vcard(vcard)

    assert "ANNIVERSARY" not in vcard
    assert [(d.title, d.date) for d in parsed.important_dates] == [("First met, Paris", date(2010, 6, 1))]


def test_typed_anniversary_repeating_a_labelled_date_is_dropped():
    """Cards from other writers may repeat a labelled date with a split TYPE."""
    card = "\r\n".join(
        [
            "BEGIN:VCARD",
            "VERSION:3.0",
            "UID:dup",
            "item1.X-ABDATE:20100601",
            "item1.X-ABLabel:First met\\, Paris",
            'X-ANNIVERSARY;TYPE="FIRST MET,PARIS":20100601',
            "X-ANNIVERSARY;TYPE=WEDDING:20120101",
            "END:VCARD",
        ]
    )

    parsed = parse_vcard(card)

    assert [(d.title, d.date) for d in parsed.important_dates] == [
        ("First met, Paris", date(2010, 6, 1)),
        ("wedding", date(2012, 1, 1)),
    ]


def test_year_less_date_decodes_then_encodes():
    """--03-15 keeps its missing year through decode and encode."""
    parsed = parse_vcard("BEGIN:VCARD\r\nVERSION:4.0\r\nUID:nd\r\nFN:Nameless\r\nBDAY:--03-15\r\nEND:VCARD\r\n")
    contact = contact_from_parsed("alice", parsed)

    assert [(d.title, d.date) for d in contact.important_dates] == [("Birthday", date(UNKNOWN_YEAR, 3, 15))]
    assert "BDAY:--03-15" in lines_of(contact_to_vcard(contact, VCardOptions(version="4.0")))
    assert "BDAY:--0315" in lines_of(contact_to_vcard(contact))


def test_text_helpers():
    assert escape_text("a,b;c\\d\ne") == "a\\,b\\;c\\\\d\\ne"
    assert unescape_text("a\\,b\\;c\\\\d\\Ne") == "a,b;c\\d\ne"
    assert split_escaped("Doe\\; Jr;John;;") == ["Doe; Jr", "John", "", ""]
    assert strip_markdown("# Title\n`code` and *it*") == "Title\ncode and it"

    folded = fold_line("N" * 160)
    assert [len(line) for line in folded] == [75, 75, 12]
    assert all(line.startswith(" ") for line in folded[1:])
