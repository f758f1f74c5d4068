from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select

from healing_forest.auth_service import assicura_admin
from healing_forest.db import db_session
from healing_forest.models import Professionista, Servizio, SottoServizio, Spazio, TipoSpazio

# codice, nome, categoria, [(sotto-servizio, durata, prezzo)]
CATALOGO: list[tuple[str, str, str, list[tuple[str, int, int]]]] = [
    (
        "medicina-funcional", "Medicina Funcional", "medicina",
        [
            ("Consulta funcional - primera vez", 75, 300000),
            ("Consulta funcional - seguimiento", 30, 150000),
            ("Consulta péptidos", 60, 200000),
            ("Consulta células madre", 60, 200000),
        ],
    ),
    (
        "medicina-estetica", "Medicina Estética", "medicina",
        [
            ("Consulta medicina estética valoración", 60, 150000),
            ("Procedimientos estéticos", 60, 750000),
        ],
    ),
    (
        "medicina-regenerativa", "Medicina Regenerativa & Longevidad", "longevidad",
        [
            ("Baño helado", 30, 80000),
            ("Sauna infrarrojo", 45, 130000),
            ("Baño helado + sauna infrarrojo", 60, 190000),
            ("Cámara hiperbárica", 60, 180000),
        ],
    ),
    (
        "drips", "DRIPS - Sueroterapia", "sueroterapia",
        [
            ("Vitaminas - IV Drips", 60, 265000),
            ("NAD 125 mg", 90, 400000),
            ("NAD 500 mg", 180, 1500000),
            ("Ozonoterapia - suero ozonizado", 60, 300000),
            ("Ozonoterapia - autohemoterapia mayor", 60, 350000),
        ],
    ),
    (
        "faciales", "Faciales", "estetica",
        [
            ("Clean Facial", 75, 280000),
            ("Glow Facial", 90, 380000),
            ("Anti-Age Facial", 90, 380000),
            ("Lymph Facial", 90, 380000),
        ],
    ),
    (
        "masajes", "Masajes", "bienestar",
        [
            ("Drenaje linfático", 75, 190000),
            ("Relajante", 75, 200000),
        ],
    ),
]

PROFESSIONISTI = [
    ("Camila", "Restrepo", "Medicina funcional", "camila@healingforest.local"),
    ("Andrés", "Gómez", "Medicina estética", "andres@healingforest.local"),
    ("Valentina", "Ospina", "Sueroterapia", "valentina@healingforest.local"),
    ("Laura", "Mejía", "Terapias faciales y masajes", "laura@healingforest.local"),
]

SPAZI = [
    ("Consultorio 1", TipoSpazio.CONSULTORIO, 1),
    ("Consultorio 2", TipoSpazio.CONSULTORIO, 1),
    ("Cámara hiperbárica", TipoSpazio.CAMERA_IPERBARICA, 1),
    ("Sala Breathe & Move", TipoSpazio.SALA, 12),
]


def seed_base() -> None:
    """
    Popola dati minimi (idempotente):
    - servizi e sotto-servizi
    - professionisti
    - spazi
    - admin da variabili d'ambiente
    """
    with db_session() as s:
        for codice, nome, categoria, sotto in CATALOGO:
            sv = s.execute(select(Servizio).where(Servizio.codice == codice)).scalar_one_or_none()
            if sv is None:
                durata, prezzo = min((d, p) for _, d, p in sotto)
                sv = Servizio(
                    codice=codice, nome=nome, categoria=categoria, prezzo=Decimal(prezzo), durata_minuti=durata
                )
                s.add(sv)
                s.flush()

            for nome_ss, durata, prezzo in sotto:
                exists = s.execute(
                    select(SottoServizio).where(SottoServizio.servizio_id == sv.id, SottoServizio.nome == nome_ss)
                ).scalar_one_or_none()
                if exists is None:
                    s.add(SottoServizio(servizio_id=sv.id, nome=nome_ss, durata_minuti=durata, prezzo=Decimal(prezzo)))

        for nome, cognome, spec, email in PROFESSIONISTI:
            exists = s.execute(
                select(Professionista).where(Professionista.nome == nome, Professionista.cognome == cognome)
            ).scalar_one_or_none()
            if exists is None:
                s.add(Professionista(nome=nome, cognome=cognome, specializzazione=spec, email=email))

        for nome, tipo, capienza in SPAZI:
            if s.execute(select(Spazio).where(Spazio.nome == nome)).scalar_one_or_none() is None:
                s.add(Spazio(nome=nome, tipo=tipo, capienza=capienza))

    assicura_admin()
