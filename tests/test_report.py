"""Test dashboard KPIs and reports."""
from datetime import date, datetime

from healing_forest import classi, pagamenti, prenotazioni, report

INIZIO = datetime(2026, 3, 5, 10, 0)


def test_kpi_e_incassi(paziente, professionista, servizio, adesso):
    app = prenotazioni.prenota_appuntamento(paziente, professionista, servizio, INIZIO, adesso=adesso)
    pid = pagamenti.registra_pagamento(paziente, 100000, "carta", appuntamento_id=app.appuntamento_id)
    pagamenti.completa_pagamento(pid, adesso=adesso)
    pagamenti.registra_pagamento(paziente, 30000, "contanti")

    kpi = report.kpi_dashboard(adesso=INIZIO)
    assert kpi["pazienti_attivi"] == 1
    assert kpi["appuntamenti_oggi"] == 1
    assert kpi["incasso_mese"] == 100000.0
    assert kpi["pagamenti_pendenti"] == 1
    assert kpi["importo_pendente"] == 30000.0

    incassi = report.incassi_per_mese(mesi=3, adesso=adesso)
    assert incassi == [
        {"mese": "2026-01", "incasso": 0.0},
        {"mese": "2026-02", "incasso": 0.0},
        {"mese": "2026-03", "incasso": 100000.0},
    ]


def test_appuntamenti_per_stato(paziente, professionista, servizio, adesso):
    a = prenotazioni.prenota_appuntamento(paziente, professionista, servizio, INIZIO, adesso=adesso)
    prenotazioni.prenota_appuntamento(paziente, professionista, servizio, INIZIO.replace(hour=14), adesso=adesso)
    prenotazioni.annulla_appuntamento(a.appuntamento_id, adesso=adesso)

    stati = report.appuntamenti_per_stato(date(2026, 3, 1), date(2026, 3, 31))
    assert stati["CONFERMATO"] == 1
    assert stati["ANNULLATO"] == 1
    assert stati["COMPLETATO"] == 0


def test_occupazione_classi(nuovo_paziente, adesso):
    cid = classi.crea_classe("ForestFire", "Fernanda", datetime(2026, 3, 3, 18, 0), max_capienza=4)
    classi.crea_classe("OmRoot", "Kata", datetime(2026, 3, 4, 17, 0), max_capienza=4)
    classi.iscrivi(nuovo_paziente(1), cid, adesso=adesso)
    classi.iscrivi(nuovo_paziente(2), cid, adesso=adesso)

    occ = report.occupazione_classi(date(2026, 3, 2), date(2026, 3, 8))
    assert occ == {"classi": 2, "iscritti": 2, "posti": 8, "occupazione_pct": 25.0}
