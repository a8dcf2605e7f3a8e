import json

import pytest

from transaction.category_store import CategoryStore
from tests.helpers import RecordingNotifier, StubSuggester


@pytest.fixture
def mapping_path(tmp_path):
    path = tmp_path / "merchant-category-mapping.json"
    path.write_text(json.dumps({
        "NTUC": "Expenses:Food:Groceries",
        "NTUC FP-CLEMENTI": "Expenses:Shopping",
        "ShengSiong": "Expenses:Food:Groceries",
        "Koufu": "Expenses:Food:Dining",
        "PENDING SHOP": "",
    }), encoding="utf-8")
    return path


@pytest.fixture
def store(mapping_path):
    return CategoryStore(str(mapping_path))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def suggester():
    return StubSuggester()
