"""Test demo data generator and admin CLI."""
from datetime import datetime
from pathlib import Path

import pytest

import healing_forest
from healing_forest import cli, genera_dati_demo
from healing_forest.auth_service import autentica
from healing_forest.crediti import verifica_saldi
from healing_forest.services import lista_pazienti_flat

ADESSO_DEMO = datetime(2026, 3, 16, 8, 0)


def test_dati_demo_coerenti():
    r = genera_dati_demo.main(pazienti=5, giorni=10, adesso=ADESSO_DEMO)

    assert r.pazienti == 5
    assert r.appuntamenti > 0
    assert r.pagamenti > 0
    assert verifica_saldi() == []


def test_dati_demo_reset():
    genera_dati_demo.main(pazienti=5, giorni=5, adesso=ADESSO_DEMO)
    genera_dati_demo.main(pazienti=3, giorni=5, adesso=ADESSO_DEMO)
    assert len(lista_pazienti_flat()) == 3


def test_dati_demo_senza_reset_si_aggiungono():
    genera_dati_demo.main(pazienti=5, giorni=5, adesso=ADESSO_DEMO)
    r = genera_dati_demo.main(pazienti=5, giorni=5, reset=False, adesso=ADESSO_DEMO)

    assert r.pazienti == 5
    pazienti = lista_pazienti_flat()
    assert len(pazienti) == 10
    assert len({p["email"] for p in pazienti}) == 10
    assert len({p["documento"] for p in pazienti}) == 10
    assert verifica_saldi() == []


def test_cli_init_e_list(capsys):
    cli.main(["init"])
    cli.main(["list", "servizi"])
    out = capsys.readouterr().out
    assert "DB inizializzato" in out
    assert "Medicina Funcional" in out
    assert "NAD 125 mg" in out


def test_cli_utenti(capsys):
    cli.main(["create-admin", "--username", "admin", "--password", "admin-password"])
    cli.main(["create-user", "--username", "reception", "--password", "segreta1"])
    cli.main(["update-password", "--username", "reception", "--password", "nuova-password"])
    cli.main(["check-admin"])

    out = capsys.readouterr().out
    assert "admin | ADMIN | attivo" in out
    assert "reception | STAFF | attivo" in out
    assert autentica("reception", "nuova-password") is not None


def test_cli_errore_di_dominio(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(["cancel", "--appuntamento-id", "non-esiste"])
    assert exc.value.code == 1
    assert "Errore: Appuntamento non trovato." in capsys.readouterr().err


def test_cli_manutenzione(capsys):
    cli.main(["verify"])
    cli.main(["expire-credits"])
    cli.main(["reminders"])
    cli.main(["notifications"])

    out = capsys.readouterr().out
    assert "Ledger crediti coerente." in out
    assert "Lotti di credito scaduti: 0" in out
    assert "Nessuna notifica pendente." in out


def test_moduli_con_import_assoluti():
    sorgenti = Path(healing_forest.__file__).parent.glob("*.py")
    relativi = [
        f"{p.name}: {riga.strip()}"
        for p in sorgenti
        for riga in p.read_text(encoding="utf-8").splitlines()
        if riga.lstrip().startswith("from .")
    ]
    assert relativi == []
