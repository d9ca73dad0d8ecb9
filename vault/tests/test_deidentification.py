"""
Tests for the de-identification engine.

Verifies that:
- Each level removes its identifier categories and leaves the rest alone
- Tokens are numbered per category and restart on every call
- Offsets refer to the original text
- Output is idempotent and passes verification at the same level
"""

import random

import pytest

from vault.app.models.deidentification import ComplianceLevel, IdentifierType
from vault.app.services.deidentification import DeidentificationEngine
from vault.app.services.hashing import sha256_text

CONTACT_TEXT = "Seen today: Marie Tremblay, email marie@example.com, phone 514-555-1234."
IDENTITY_TEXT = "RAMQ TREM12345678 SIN 123-456-789 card 4111 1111 1111 1111"
ADDRESS_TEXT = "Lives at 1234 rue des Érables, Montréal H2X 1Y4. Seen 2024-03-15."


@pytest.fixture
def engine():
    return DeidentificationEngine()


def test_minimal_removes_identity_numbers_only(engine):
    result = engine.deidentify(IDENTITY_TEXT + " Marie Tremblay", ComplianceLevel.MINIMAL)

    assert result.cleaned_text == "RAMQ [HEALTH_CARD_1] SIN [SIN_1] card [CARD_1] Marie Tremblay"
    assert [e.entity_type for e in result.removed_entities] == [
        IdentifierType.HEALTH_INSURANCE_NUMBER,
        IdentifierType.NATIONAL_ID,
        IdentifierType.PAYMENT_CARD,
    ]


def test_federal_removes_names_and_contact_details(engine):
    result = engine.deidentify(CONTACT_TEXT, ComplianceLevel.FEDERAL)

    assert result.cleaned_text == "Seen today: [NAME_1], email [EMAIL_1], phone [PHONE_1]."
    assert result.compliance_level == ComplianceLevel.FEDERAL
    assert result.original_hash == sha256_text(CONTACT_TEXT)


def test_federal_includes_minimal_categories(engine):
    result = engine.deidentify("Marie Tremblay, RAMQ TREM12345678", ComplianceLevel.FEDERAL)

    assert result.cleaned_text == "[NAME_1], RAMQ [HEALTH_CARD_1]"


def test_removed_entity_offsets_point_into_original(engine):
    result = engine.deidentify(CONTACT_TEXT, ComplianceLevel.FEDERAL)

    assert len(result.removed_entities) == 3
    for entity in result.removed_entities:
        assert CONTACT_TEXT[entity.start:entity.end] == entity.original_text
        assert 0.0 <= entity.confidence <= 1.0

    name = result.removed_entities[0]
    assert name.entity_type == IdentifierType.NAME
    assert name.original_text == "Marie Tremblay"
    assert name.replacement == "[NAME_1]"


def test_regional_generalizes_dates_and_removes_addresses(engine):
    result = engine.deidentify(ADDRESS_TEXT, ComplianceLevel.REGIONAL)

    assert result.cleaned_text == (
        "Lives at [ADDRESS_1], Montréal [POSTAL_1]. Seen [DATE_GENERALIZED_2024]."
    )


def test_full_anonymous_removes_dates_and_locations(engine):
    result = engine.deidentify(ADDRESS_TEXT, ComplianceLevel.FULL_ANONYMOUS)

    assert result.cleaned_text == "Lives at [ADDRESS_1], [LOCATION_1] [POSTAL_1]. Seen [DATE_1]."


def test_federal_leaves_dates_and_postal_codes(engine):
    result = engine.deidentify(ADDRESS_TEXT, ComplianceLevel.FEDERAL)

    assert result.cleaned_text == ADDRESS_TEXT
    assert result.removed_entities == []


@pytest.mark.parametrize(
    "text, expected",
    [
        ("seen on March 5, 2023 for follow-up", "seen on [DATE_GENERALIZED_2023] for follow-up"),
        ("vu le 1er janvier 2024", "vu le [DATE_GENERALIZED_2024]"),
        ("visit 15/03/2024", "visit [DATE_GENERALIZED_2024]"),
    ],
)
def test_date_formats_are_generalized_to_year(engine, text, expected):
    assert engine.deidentify(text, ComplianceLevel.REGIONAL).cleaned_text == expected


def test_parenthesized_phone_number(engine):
    result = engine.deidentify("call (514) 555-1234 tomorrow", ComplianceLevel.FEDERAL)

    assert result.cleaned_text == "call [PHONE_1] tomorrow"


def test_numbering_is_per_category(engine):
    text = "a@example.com, b@example.com, 514-555-1234"

    result = engine.deidentify(text, ComplianceLevel.FEDERAL)

    assert result.cleaned_text == "[EMAIL_1], [EMAIL_2], [PHONE_1]"


def test_numbering_restarts_on_each_call(engine):
    first = engine.deidentify(CONTACT_TEXT, ComplianceLevel.FEDERAL)
    second = engine.deidentify(CONTACT_TEXT, ComplianceLevel.FEDERAL)

    assert first.cleaned_text == second.cleaned_text
    assert first.removed_entities == second.removed_entities


def test_output_is_idempotent(engine):
    for level in ComplianceLevel:
        once = engine.deidentify(ADDRESS_TEXT + " " + CONTACT_TEXT, level)
        twice = engine.deidentify(once.cleaned_text, level)

        assert twice.cleaned_text == once.cleaned_text
        assert twice.removed_entities == []


def test_verify_compliance(engine):
    result = engine.deidentify(CONTACT_TEXT, ComplianceLevel.FEDERAL)

    assert engine.verify_compliance(CONTACT_TEXT, ComplianceLevel.FEDERAL) is False
    assert engine.verify_compliance(result.cleaned_text, ComplianceLevel.FEDERAL) is True
    # The cleaned text still satisfies every weaker level.
    assert engine.verify_compliance(result.cleaned_text, ComplianceLevel.MINIMAL) is True


def test_remaining_categories(engine):
    remaining = engine.remaining_categories(CONTACT_TEXT, ComplianceLevel.FEDERAL)

    assert remaining == [IdentifierType.NAME, IdentifierType.EMAIL, IdentifierType.PHONE]


def test_text_without_identifiers_is_unchanged(engine):
    text = "patient reports improved mood and sleep; continue current plan"

    result = engine.deidentify(text, ComplianceLevel.FULL_ANONYMOUS)

    assert result.cleaned_text == text
    assert result.removed_entities == []


def test_empty_text(engine):
    result = engine.deidentify("", ComplianceLevel.FULL_ANONYMOUS)

    assert result.cleaned_text == ""
    assert result.original_hash == sha256_text("")


def test_level_accepts_string_value(engine):
    result = engine.deidentify(CONTACT_TEXT, "federal")

    assert result.compliance_level == ComplianceLevel.FEDERAL


def test_health_card_and_email_example(engine):
    text = "Patient RAMQ: ABCD12345678, contact john@example.com"

    minimal = engine.deidentify(text, ComplianceLevel.MINIMAL)
    assert minimal.cleaned_text == "Patient RAMQ: [HEALTH_CARD_1], contact john@example.com"

    federal = engine.deidentify(text, ComplianceLevel.FEDERAL)
    assert federal.cleaned_text == "Patient RAMQ: [HEALTH_CARD_1], contact [EMAIL_1]"

    for level in ComplianceLevel:
        cleaned = engine.deidentify(text, level).cleaned_text
        assert "ABCD12345678" not in cleaned
        assert engine.verify_compliance(cleaned, level) is True


IDENTIFIER_FRAGMENTS = (
    "Marie Tremblay",
    "Jean-Luc Gagnon",
    "Mme Côté",
    "Élise Bélanger",
    "john@example.com",
    "m.roy+clinic@sante.qc.ca",
    "514-555-1234",
    "(418) 555-0199",
    "+1 450.555.7788",
    "ABCD12345678",
    "TREM 87654321",
    "123-456-789",
    "987 654 321",
    "4111 1111 1111 1111",
    "5500-0000-0000-0004",
    "T1234-567890-12",
    "H2X 1Y4",
    "G1R5M1",
    "1234 rue des Érables",
    "55 Maple Street",
    "12345-678-1234567",
    "2024-03-15",
    "15/03/2024",
    "March 5, 2023",
    "1er janvier 2024",
    "Montréal",
    "Trois-Rivières",
    "Laval",
)
FILLER_WORDS = (
    "patient", "reports", "improved", "sleep", "seen", "today", "follow-up",
    "plan", "continue", "mood", "RAMQ", "SIN", "phone", "email", "at", "on",
    "vu", "le", "Seen", "Plan", "12", "3", "mg", ":", ";", "(", ")",
)


def _random_note(rng):
    parts = []
    for _ in range(rng.randint(1, 12)):
        pool = IDENTIFIER_FRAGMENTS if rng.random() < 0.4 else FILLER_WORDS
        parts.append(rng.choice(pool))
    return rng.choice((" ", ", ", ". ", "\n")).join(parts)


@pytest.mark.parametrize("level", list(ComplianceLevel))
def test_deidentified_output_passes_verification(engine, level):
    rng = random.Random(20240315)

    for _ in range(500):
        text = _random_note(rng)
        cleaned = engine.deidentify(text, level).cleaned_text

        assert engine.verify_compliance(cleaned, level), (text, cleaned)
