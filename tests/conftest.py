from typing import Dict, List, Sequence, Union

import pytest

from souvenir_notifier.inventory import InventoryError, ObservedItem
from souvenir_notifier.poller import Poller
from souvenir_notifier.state import StateStore


def item(item_id: str, name: str, lines: Sequence[str] = ()) -> ObservedItem:
    return ObservedItem(item_id=item_id, display_name=name, market_key=name, description_lines=list(lines))


class FakeResponse:
    def __init__(self, payload=None, status_code: int = 200, text: str = ""):
        self._payload = payload
        self.status_code = status_code
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeDispatcher:
    def __init__(self, fail_tokens: Sequence[str] = ()):
        self.calls: List[tuple] = []
        self.fail_tokens = set(fail_tokens)

    def send(self, token, payload) -> bool:
        self.calls.append((token, dict(payload)))
        return token not in self.fail_tokens

    def close(self) -> None:
        pass


class FakeInventories:
    """account id -> items, or an exception to raise."""

    def __init__(self, inventories: Dict[str, Union[List[ObservedItem], Exception]] = None):
        self.inventories = inventories or {}
        self.calls: List[str] = []

    def __call__(self, account_id: str):
        self.calls.append(account_id)
        value = self.inventories.get(account_id, [])
        if isinstance(value, Exception):
            raise value
        return list(value)


class FakePrices:
    def __init__(self, price: str = "1,23€", error: Exception = None):
        self.price = price
        self.error = error
        self.calls: List[str] = []

    def __call__(self, market_key: str) -> str:
        self.calls.append(market_key)
        if self.error is not None:
            raise self.error
        return self.price


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "files" / "data.json"))


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def inventories():
    return FakeInventories()


@pytest.fixture
def prices():
    return FakePrices()


@pytest.fixture
def poller(store, inventories, prices, dispatcher):
    return Poller(
        store,
        fetch_inventory=inventories,
        lookup_price=prices,
        dispatcher=dispatcher,
        max_workers=1,
    )


@pytest.fixture
def private_error():
    return InventoryError("76561198000000001", "private")
