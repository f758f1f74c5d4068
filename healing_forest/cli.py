from __future__ import annotations

import argparse
import sys
from datetime import datetime
from decimal import Decimal

from healing_forest.auth_models import RuoloUtente
from healing_forest.auth_service import assicura_admin, cambia_password, crea_utente, stato_admin
from healing_forest.classi import genera_calendario
from healing_forest.config import setup_logging
from healing_forest.crediti import scadi_crediti, verifica_saldi
from healing_forest.eccezioni import ErroreDominio
from healing_forest.genera_dati_demo import main as genera_dati_demo
from healing_forest.notifiche import (
    estrai_notifiche_pendenti,
    invia_push_pendenti,
    marca_notifica_inviata,
    scansiona_promemoria,
)
from healing_forest.prenotazioni import annulla_appuntamento, prenota_appuntamento
from healing_forest.seed import seed_base
from healing_forest.services import (
    init_db,
    lista_pazienti_flat,
    lista_professionisti_flat,
    lista_servizi_flat,
    lista_spazi_flat,
    lista_sotto_servizi_flat,
)


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("DB inizializzato e seed completato.")


def cmd_create_user(args: argparse.Namespace) -> None:
    uid = crea_utente(args.username, args.password, ruolo=RuoloUtente(args.ruolo))
    print(f"Utente creato: {uid}")


def cmd_create_admin(args: argparse.Namespace) -> None:
    uid = assicura_admin(args.username, args.password)
    print(f"Admin pronto: {uid}")


def cmd_update_password(args: argparse.Namespace) -> None:
    cambia_password(args.username, args.password)
    print("Password aggiornata.")


def cmd_check_admin(args: argparse.Namespace) -> None:
    admins = stato_admin()
    if not admins:
        print("Nessun account admin/staff. Usa: create-admin --username ... --password ...")
        return
    for a in admins:
        ultimo = a.ultimo_accesso.isoformat(timespec="minutes") if a.ultimo_accesso else "mai"
        print(f"{a.username} | {a.ruolo} | {'attivo' if a.attivo else 'disattivato'} | ultimo accesso: {ultimo}")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "professionisti":
        for m in lista_professionisti_flat():
            print(f"{m['id']} | {m['cognome']} {m['nome']} | {m['specializzazione']}")
    elif args.entity == "pazienti":
        for p in lista_pazienti_flat():
            print(f"{p['id']} | {p['cognome']} {p['nome']} | {p['email'] or '-'} | crediti {p['saldo_crediti']:.2f}")
    elif args.entity == "spazi":
        for sp in lista_spazi_flat():
            print(f"{sp['id']} | {sp['nome']} ({sp['tipo']})")
    elif args.entity == "servizi":
        for sv in lista_servizi_flat():
            print(f"{sv['id']} | {sv['nome']} [{sv['categoria']}]")
            for ss in lista_sotto_servizi_flat(sv["id"]):
                print(f"    {ss['id']} | {ss['nome']} ({ss['durata_minuti']} min, {ss['prezzo']:.0f})")


def cmd_book(args: argparse.Namespace) -> None:
    inizio = datetime.fromisoformat(args.inizio)  # formato: 2026-01-14T10:30
    esito = prenota_appuntamento(
        paziente_id=args.paziente_id,
        professionista_id=args.professionista_id,
        servizio_id=args.servizio_id,
        inizio=inizio,
        sotto_servizio_id=args.sotto_servizio_id,
        spazio_id=args.spazio_id,
        note=args.note,
        usa_crediti=Decimal(args.crediti) if args.crediti else None,
        preavviso=False,
    )
    print(esito.messaggio)
    print(f"Appuntamento ID: {esito.appuntamento_id} | importo {esito.importo} | crediti usati {esito.crediti_usati}")


def cmd_cancel(args: argparse.Namespace) -> None:
    esito = annulla_appuntamento(args.appuntamento_id, motivo=args.motivo)
    print(f"Annullato. {esito.messaggio}")
    if esito.credito_id:
        print(f"Credito {esito.credito_id}: {esito.importo_credito} ({esito.percentuale}%)")


def cmd_seed_classes(args: argparse.Namespace) -> None:
    n = genera_calendario(giorni=args.giorni)
    print(f"Classi create: {n}")


def cmd_expire_credits(args: argparse.Namespace) -> None:
    n = scadi_crediti()
    print(f"Lotti di credito scaduti: {n}")


def cmd_reminders(args: argparse.Namespace) -> None:
    e = scansiona_promemoria()
    print(
        f"Promemoria: {e.appuntamenti_24h} (24h), {e.appuntamenti_2h} (2h), "
        f"{e.classi} classi, {e.push_inviate} push inviate"
    )
    print(f"Push in sospeso inviate: {invia_push_pendenti()}")


def cmd_verify(args: argparse.Namespace) -> None:
    incoerenze = verifica_saldi()
    if not incoerenze:
        print("Ledger crediti coerente.")
        return
    for r in incoerenze:
        print(f"{r['paziente_id']} | cache {r['cache']} | movimenti {r['movimenti']} | lotti {r['lotti']}")
    sys.exit(1)


def cmd_notifications(args: argparse.Namespace) -> None:
    """
    Legge le notifiche pendenti, le stampa su console
    e (opzionale) le marca come inviate.
    """
    pendenti = estrai_notifiche_pendenti(limit=args.limit)
    if not pendenti:
        print("Nessuna notifica pendente.")
        return

    for n in pendenti:
        print(f"[{n.id}] {n.tipo.value} | {n.creata_il.isoformat()} | {n.messaggio}")
        if args.mark_sent:
            marca_notifica_inviata(n.id)

    if args.mark_sent:
        print("Notifiche marcate come inviate.")


def cmd_demo_data(args: argparse.Namespace) -> None:
    r = genera_dati_demo(pazienti=args.pazienti, giorni=args.giorni, reset=not args.no_reset)
    print(f"OK: {r.pazienti} pazienti, {r.appuntamenti} appuntamenti, {r.pagamenti} pagamenti, {r.crediti} crediti.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="healing_forest_cli", description="CLI amministrativa Healing Forest")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea DB e carica seed")
    p_init.set_defaults(func=cmd_init)

    p_user = sub.add_parser("create-user", help="Crea utente")
    p_user.add_argument("--username", required=True)
    p_user.add_argument("--password", required=True)
    p_user.add_argument("--ruolo", choices=[r.value for r in RuoloUtente], default=RuoloUtente.STAFF.value)
    p_user.set_defaults(func=cmd_create_user)

    p_admin = sub.add_parser("create-admin", help="Crea admin (se non esiste)")
    p_admin.add_argument("--username", required=True)
    p_admin.add_argument("--password", required=True)
    p_admin.set_defaults(func=cmd_create_admin)

    p_pwd = sub.add_parser("update-password", help="Aggiorna la password di un utente")
    p_pwd.add_argument("--username", required=True)
    p_pwd.add_argument("--password", required=True)
    p_pwd.set_defaults(func=cmd_update_password)

    p_check = sub.add_parser("check-admin", help="Elenca gli account admin/staff")
    p_check.set_defaults(func=cmd_check_admin)

    p_list = sub.add_parser("list", help="Lista entità")
    p_list.add_argument("entity", choices=["professionisti", "pazienti", "spazi", "servizi"])
    p_list.set_defaults(func=cmd_list)

    p_book = sub.add_parser("book", help="Prenota appuntamento")
    p_book.add_argument("--paziente-id", required=True)
    p_book.add_argument("--professionista-id", required=True)
    p_book.add_argument("--servizio-id", type=int, required=True)
    p_book.add_argument("--sotto-servizio-id", type=int, default=None)
    p_book.add_argument("--spazio-id", type=int, default=None)
    p_book.add_argument("--inizio", required=True, help="ISO datetime es: 2026-01-14T10:30")
    p_book.add_argument("--note", default=None)
    p_book.add_argument("--crediti", default=None, help="Importo crediti da usare")
    p_book.set_defaults(func=cmd_book)

    p_cancel = sub.add_parser("cancel", help="Annulla appuntamento")
    p_cancel.add_argument("--appuntamento-id", required=True)
    p_cancel.add_argument("--motivo", default=None)
    p_cancel.set_defaults(func=cmd_cancel)

    p_cls = sub.add_parser("seed-classes", help="Genera le classi del calendario settimanale")
    p_cls.add_argument("--giorni", type=int, default=14)
    p_cls.set_defaults(func=cmd_seed_classes)

    p_exp = sub.add_parser("expire-credits", help="Fa scadere i crediti oltre la data di scadenza")
    p_exp.set_defaults(func=cmd_expire_credits)

    p_rem = sub.add_parser("reminders", help="Invia i promemoria di appuntamenti e classi")
    p_rem.set_defaults(func=cmd_reminders)

    p_ver = sub.add_parser("verify", help="Verifica la coerenza del ledger crediti")
    p_ver.set_defaults(func=cmd_verify)

    p_not = sub.add_parser("notifications", help="Legge le notifiche pendenti")
    p_not.add_argument("--limit", type=int, default=50)
    p_not.add_argument("--mark-sent", action="store_true", help="Marca come inviate dopo averle stampate")
    p_not.set_defaults(func=cmd_notifications)

    p_demo = sub.add_parser("demo-data", help="Popola il DB con dati demo degli ultimi mesi")
    p_demo.add_argument("--pazienti", type=int, default=60)
    p_demo.add_argument("--giorni", type=int, default=90)
    p_demo.add_argument("--no-reset", action="store_true", help="Non cancellare i dati esistenti")
    p_demo.set_defaults(func=cmd_demo_data)

    return p


def main(argv: list[str] | None = None) -> None:
    setup_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    init_db()  # garantisce tabelle
    try:
        args.func(args)
    except ErroreDominio as e:
        print(f"Errore: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
