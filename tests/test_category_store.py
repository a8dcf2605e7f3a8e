import json
import os

import pytest

from transaction.category_store import CategoryStore, CategoryStoreError


def _bump_mtime(path):
    # Filesystem timestamps can be coarse, push the mtime forward explicitly
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))


def test_exact_match_beats_substring(store):
    assert store.find_category("NTUC FP-CLEMENTI") == "Expenses:Shopping"


def test_substring_match_ignores_case(store):
    assert store.find_category("Shengsiong Express") == "Expenses:Food:Groceries"


def test_merchant_contained_in_key(store):
    assert store.find_category("koufu") == "Expenses:Food:Dining"


def test_first_substring_match_in_insertion_order_wins(store):
    assert store.find_category("NTUC FAIRPRICE") == "Expenses:Food:Groceries"


def test_unknown_merchant_returns_none(store):
    assert store.find_category("ACME") is None
    assert store.find_category("") is None


def test_empty_placeholder_never_matches(store):
    assert store.find_category("PENDING SHOP") is None


def test_add_unresolved_merchant_writes_placeholder(store, mapping_path):
    store.add_unresolved_merchant("ACME")

    data = json.loads(mapping_path.read_text(encoding="utf-8"))
    assert data["ACME"] == ""
    assert store.find_category("ACME") is None


def test_add_unresolved_merchant_with_category_is_idempotent(store, mapping_path):
    store.add_unresolved_merchant("ACME", "Expenses:Misc")
    store.add_unresolved_merchant("ACME", "Expenses:Misc")

    data = json.loads(mapping_path.read_text(encoding="utf-8"))
    assert list(data).count("ACME") == 1
    assert store.find_category("ACME") == "Expenses:Misc"


def test_manual_edit_is_picked_up(store, mapping_path):
    data = json.loads(mapping_path.read_text(encoding="utf-8"))
    data["PENDING SHOP"] = "Expenses:Household"
    mapping_path.write_text(json.dumps(data), encoding="utf-8")
    _bump_mtime(mapping_path)

    assert store.find_category("PENDING SHOP") == "Expenses:Household"


def test_missing_file_is_empty_mapping(tmp_path):
    store = CategoryStore(str(tmp_path / "missing.json"))

    assert store.find_category("NTUC") is None
    assert store.all_mappings() == {}


def test_corrupt_file_is_empty_mapping_and_left_untouched(tmp_path):
    path = tmp_path / "broken.json"
    broken = '{"NTUC": "Expenses:Food", "Koufu": "Expenses:Food:Dining",}'
    path.write_text(broken, encoding="utf-8")

    store = CategoryStore(str(path))

    assert store.all_mappings() == {}
    with pytest.raises(CategoryStoreError):
        store.add_unresolved_merchant("ACME", "Expenses:Misc")
    assert path.read_text(encoding="utf-8") == broken


def test_corrupt_reload_keeps_last_good_mapping(store, mapping_path):
    mapping_path.write_text('{"NTUC": "Expenses:Food:Groceries",', encoding="utf-8")
    _bump_mtime(mapping_path)

    assert store.find_category("Koufu") == "Expenses:Food:Dining"
    assert store.find_category("NTUC FP-CLEMENTI") == "Expenses:Shopping"


def test_known_categories_are_distinct_and_non_empty(store):
    assert store.known_categories() == [
        "Expenses:Food:Groceries",
        "Expenses:Shopping",
        "Expenses:Food:Dining",
    ]


def test_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / "env.json"
    path.write_text(json.dumps({"ACME": "Expenses:Misc"}), encoding="utf-8")
    monkeypatch.setenv("MERCHANT_CATEGORY_CONFIG_PATH", str(path))

    assert CategoryStore().find_category("ACME") == "Expenses:Misc"
