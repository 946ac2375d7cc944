import pytest

import services


@pytest.fixture(autouse=True)
def fast_pin_hashing(monkeypatch):
    monkeypatch.setattr(services, "PIN_HASH_ROUNDS", 4)
