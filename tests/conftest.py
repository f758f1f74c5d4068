"""Shared test fixtures."""
import os
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

# DB di test su file temporaneo: va impostato prima di importare healing_forest
_TMP = Path(tempfile.mkdtemp(prefix="healing_forest_test_"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.sqlite'}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("ADMIN_USERNAME", None)
os.environ.pop("ADMIN_PASSWORD", None)

from healing_forest import auth_models  # noqa: E402,F401
from healing_forest.db import Base, engine  # noqa: E402
from healing_forest.services import (  # noqa: E402
    crea_paziente,
    crea_professionista,
    crea_servizio,
    init_db,
)

# lunedì, prima dell'apertura
ADESSO = datetime(2026, 3, 2, 8, 0)


@pytest.fixture(autouse=True)
def db():
    """DB pulito per ogni test."""
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture
def adesso() -> datetime:
    return ADESSO


@pytest.fixture
def paziente() -> str:
    return crea_paziente("Ana", "Ruiz", email="ana@example.com", telefono="3001234567")


@pytest.fixture
def altro_paziente() -> str:
    return crea_paziente("Luis", "Mora", email="luis@example.com")


@pytest.fixture
def nuovo_paziente():
    """Factory per pazienti aggiuntivi."""
    def _create(n: int) -> str:
        return crea_paziente(f"Paziente{n}", "Test", email=f"p{n}@example.com")
    return _create


@pytest.fixture
def professionista() -> str:
    return crea_professionista("Camila", "Restrepo", "Medicina funcional")


@pytest.fixture
def servizio() -> int:
    return crea_servizio("consulta-test", "Consulta test", 100000, durata_minuti=60, categoria="medicina")
