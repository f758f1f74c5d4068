"""
Errori di dominio.

I servizi sollevano queste eccezioni; l'API le traduce in HTTP
(vedi `api_main.gestisci_errore_dominio`), la CLI stampa il messaggio.
"""
from __future__ import annotations


class ErroreDominio(ValueError):
    status_code = 400


class NonTrovato(ErroreDominio):
    status_code = 404


class RegolaViolata(ErroreDominio):
    status_code = 400


class ConflittoPrenotazione(ErroreDominio):
    """Slot occupato, classe piena, iscrizione doppia."""
    status_code = 409


class Duplicato(ErroreDominio):
    """Username, email o codice già registrati."""
    status_code = 409


class CreditiInsufficienti(ErroreDominio):
    status_code = 400


class PermessoNegato(ErroreDominio):
    status_code = 403
