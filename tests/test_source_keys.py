from __future__ import annotations

import pytest

from core.source_keys import KEY_SEPARATOR, build_message_key, normalize_handle, split_message_key


def test_normalize_handle_variants() -> None:
    assert normalize_handle("@PromoChannel") == "promochannel"
    assert normalize_handle("https://t.me/PromoChannel/") == "promochannel"
    assert normalize_handle("t.me/promo") == "promo"
    assert normalize_handle("  promo ") == "promo"


def test_build_and_split_message_key_roundtrip() -> None:
    key = build_message_key("@Promos", 42)
    assert key == f"promos{KEY_SEPARATOR}42"
    assert split_message_key(key) == ("promos", 42)


def test_split_rejects_plain_handle() -> None:
    with pytest.raises(ValueError):
        split_message_key("promos")
