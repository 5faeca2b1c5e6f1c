from __future__ import annotations

from dataclasses import replace

from core.config import ChannelConfig
from core.dedup import DedupGate, DedupVerdict
from core.processor import build_persisted

from fakes import NOW, FakeStorage, source_message

CHANNEL = ChannelConfig(name="Promos", username="promos")


def _persisted(text: str = "`PROMO2024`\nhttp://example.com", message_id: int = 1):
    return build_persisted(source_message(text, message_id=message_id), CHANNEL, ["bonus"], NOW)


def test_unknown_message_is_new() -> None:
    gate = DedupGate(FakeStorage())
    assert gate.check(source_message("hello")).verdict is DedupVerdict.NEW


def test_known_delivered_message_is_skipped() -> None:
    storage = FakeStorage()
    stored = storage.insert(_persisted())
    storage.mark_delivered(stored.id)
    result = DedupGate(storage).check(source_message("ignored"))
    assert result.verdict is DedupVerdict.ALREADY_DELIVERED


def test_known_undelivered_deliverable_is_resend_candidate() -> None:
    storage = FakeStorage()
    storage.insert(_persisted())
    result = DedupGate(storage).check(source_message("ignored"))
    assert result.verdict is DedupVerdict.ALREADY_KNOWN_UNDELIVERED
    assert result.message.record.primary_code == "PROMO2024"


def test_known_undeliverable_is_discarded() -> None:
    storage = FakeStorage()
    storage.insert(_persisted(text="no code here\njust talk"))
    result = DedupGate(storage).check(source_message("ignored"))
    assert result.verdict is DedupVerdict.ALREADY_KNOWN_INELIGIBLE


def test_lookup_uses_normalized_handle() -> None:
    storage = FakeStorage()
    storage.insert(_persisted())
    result = DedupGate(storage).check(source_message("x", handle="@Promos"))
    assert result.verdict is DedupVerdict.ALREADY_KNOWN_UNDELIVERED


def test_insert_race_reports_already_known() -> None:
    storage = FakeStorage()
    gate = DedupGate(storage)

    first = gate.admit(_persisted())
    second = gate.admit(_persisted())

    assert first.verdict is DedupVerdict.NEW
    assert first.message.id == 1
    assert second.verdict is DedupVerdict.ALREADY_KNOWN_UNDELIVERED
    assert len(storage.rows) == 1


def test_insert_race_after_delivery_reports_delivered() -> None:
    storage = FakeStorage()
    gate = DedupGate(storage)
    stored = gate.admit(_persisted()).message
    storage.mark_delivered(stored.id)

    again = gate.admit(replace(_persisted(), text="different text, same key"))
    assert again.verdict is DedupVerdict.ALREADY_DELIVERED
