"""
Backend applicativo Healing Forest (centro benessere e medicina funzionale).

Struttura:
- config.py       : variabili d'ambiente (.env) e logging
- db.py           : engine e sessioni SQLAlchemy
- models.py       : modelli ORM e enum
- regole.py       : regole di business (cancellazioni, orari, crediti, classi)
- eccezioni.py    : errori di dominio (tradotti in HTTP dall'API)
- services.py     : anagrafiche e catalogo (pazienti, professionisti, servizi, spazi)
- prenotazioni.py : appuntamenti, disponibilità, annullamenti e agenda
- crediti.py      : ledger dei crediti pazienti
- pagamenti.py    : pagamenti e rimborsi
- classi.py       : classi Breathe & Move, pacchetti, iscrizioni, lista d'attesa
- notifiche.py    : notifiche in-app, push Expo e promemoria
- report.py       : KPI e report per la dashboard
- seed.py         : dati iniziali (catalogo, professionisti, spazi)
- cli.py          : comandi amministrativi
- api_main.py     : API FastAPI (JWT)
"""
