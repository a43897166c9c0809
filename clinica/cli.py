from __future__ import annotations

import argparse
import logging
from datetime import date, datetime

from .config import LOG_FORMAT, LOG_LEVEL
from .errors import ClinicError, ValidationError
from .financial import compute_split
from .reports import ricavi_per_professionista, riepilogo_finanziario
from .seed import seed_base
from .services import (
    annulla_appuntamento,
    check_in,
    concludi_visita,
    crea_paziente,
    fila_attesa,
    init_db,
    inizia_visita,
    lista_pazienti,
    lista_procedure,
    lista_professionisti,
    prenota_appuntamento,
)


def _giorno(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Data non valida (atteso YYYY-MM-DD): {value}") from None


def _inizio(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)  # formato: 2026-01-14T10:30
    except ValueError:
        raise ValidationError(f"Data e ora non valide: {value}") from None


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("DB inizializzato e seed completato.")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "professionisti":
        for p in lista_professionisti():
            name = p["user"]["name"] if p["user"] else "-"
            print(f"{p['id']} | {name} | {p['specialty']} | commissione {p['commission'] or '-'}")
    elif args.entity == "pazienti":
        for p in lista_pazienti():
            flag = " (da completare)" if p["needs_completion"] else ""
            print(f"{p['id']} | {p['name']} | {p['phone']}{flag}")
    elif args.entity == "procedure":
        for p in lista_procedure():
            print(f"{p['id']} | {p['name']} | {p['type']} | {p['value']}")


def cmd_add_patient(args: argparse.Namespace) -> None:
    p = crea_paziente({"name": args.nome, "phone": args.telefono, "email": args.email}, created_by=args.utente_id)
    print(f"Paziente creato: {p['id']}")


def cmd_book(args: argparse.Namespace) -> None:
    start = _inizio(args.start)
    app = prenota_appuntamento(
        professional_id=args.professionista_id,
        scheduled_at=start,
        procedure_ids=args.procedura_id,
        patient_id=args.paziente_id,
        patient_name=args.nome,
        patient_phone=args.telefono,
        notes=args.note,
    )
    print(f"Appuntamento ID: {app['id']} ({app['status']})")


def cmd_check_in(args: argparse.Namespace) -> None:
    app = check_in(args.appuntamento_id)
    print(f"Check-in registrato alle {app['checked_in_at']}.")


def cmd_start(args: argparse.Namespace) -> None:
    app = inizia_visita(args.appuntamento_id)
    print(f"Visita iniziata alle {app['started_at']}.")


def cmd_cancel(args: argparse.Namespace) -> None:
    annulla_appuntamento(args.appuntamento_id)
    print("Annullato.")


def cmd_complete(args: argparse.Namespace) -> None:
    esito = concludi_visita(
        args.appuntamento_id,
        {"assessment": args.valutazione, "plan": args.piano, "notes": args.note},
        performed_procedure_ids=args.procedura_id or None,
    )
    print("Visita conclusa.")
    rec = esito["financial_record"]
    if rec:
        print(f"Totale {rec['total_value']} | clinica {rec['clinic_commission']} | professionista {rec['professional_value']}")


def cmd_queue(args: argparse.Namespace) -> None:
    items = fila_attesa(_giorno(args.giorno), args.professionista_id, status=args.stato, procedure_type=args.tipo)
    if not items:
        print("Fila vuota.")
        return
    for a in items:
        ora = a["scheduled_at"][11:16]
        print(f"[{a['id']}] {ora} | {a['status']:<11} | {a['patient_name'] or '-'} | {a['professional_name'] or '-'}")


def cmd_split(args: argparse.Namespace) -> None:
    """Anteprima della ripartizione, senza toccare il DB."""
    split = compute_split(args.valori, args.commissione)
    for key, value in split.as_dict().items():
        print(f"{key}: {value}")


def cmd_report(args: argparse.Namespace) -> None:
    dal, al = _giorno(args.dal), _giorno(args.al)
    tot = riepilogo_finanziario(dal, al, args.professionista_id)
    print(
        f"Visite: {tot['records']} | Totale: {tot['total_value']} | "
        f"Clinica: {tot['clinic_commission']} | Professionisti: {tot['professional_value']}"
    )
    for r in ricavi_per_professionista(dal, al, args.professionista_id):
        print(f"- {r['professional_name']}: {r['appointments_count']} visite, {r['total_value']} ({r['professional_value']} al professionista)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinica", description="CLI Clinica (fila, visite, ripartizione finanziaria)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea DB e carica seed")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="Lista entità")
    p_list.add_argument("entity", choices=["professionisti", "pazienti", "procedure"])
    p_list.set_defaults(func=cmd_list)

    p_addp = sub.add_parser("add-patient", help="Crea paziente")
    p_addp.add_argument("--nome", required=True)
    p_addp.add_argument("--telefono", required=True)
    p_addp.add_argument("--email", default=None)
    p_addp.add_argument("--utente-id", type=int, default=1, help="Utente che registra il paziente")
    p_addp.set_defaults(func=cmd_add_patient)

    p_book = sub.add_parser("book", help="Prenota appuntamento")
    p_book.add_argument("--professionista-id", type=int, required=True)
    p_book.add_argument("--procedura-id", type=int, action="append", required=True, help="Ripetibile")
    p_book.add_argument("--start", required=True, help="ISO datetime es: 2026-01-14T10:30")
    p_book.add_argument("--paziente-id", type=int, default=None)
    p_book.add_argument("--nome", default=None, help="Pre-agendamento senza paziente registrato")
    p_book.add_argument("--telefono", default=None)
    p_book.add_argument("--note", default=None)
    p_book.set_defaults(func=cmd_book)

    for name, func, help_ in (
        ("check-in", cmd_check_in, "Paziente arrivato (scheduled -> waiting)"),
        ("start", cmd_start, "Inizia visita (waiting -> in_progress)"),
        ("cancel", cmd_cancel, "Annulla appuntamento"),
    ):
        sp = sub.add_parser(name, help=help_)
        sp.add_argument("--appuntamento-id", type=int, required=True)
        sp.set_defaults(func=func)

    p_done = sub.add_parser("complete", help="Conclude la visita con evoluzione e record finanziario")
    p_done.add_argument("--appuntamento-id", type=int, required=True)
    p_done.add_argument("--valutazione", default=None)
    p_done.add_argument("--piano", default=None)
    p_done.add_argument("--note", default=None)
    p_done.add_argument("--procedura-id", type=int, action="append", help="Procedure eseguite (default: tutte)")
    p_done.set_defaults(func=cmd_complete)

    p_queue = sub.add_parser("queue", help="Fila del giorno")
    p_queue.add_argument("--giorno", default=None, help="YYYY-MM-DD (default: oggi)")
    p_queue.add_argument("--professionista-id", type=int, default=None)
    p_queue.add_argument("--stato", default=None, help="scheduled/waiting/in_progress/completed/cancelled/all")
    p_queue.add_argument("--tipo", default=None, help="consultation/exam/procedure")
    p_queue.set_defaults(func=cmd_queue)

    p_split = sub.add_parser("split", help="Calcola la ripartizione clinica/professionista")
    p_split.add_argument("valori", nargs="+")
    p_split.add_argument("--commissione", default=None, help="Frazione 0..1 (default da config)")
    p_split.set_defaults(func=cmd_split)

    p_rep = sub.add_parser("report", help="Riepilogo finanziario")
    p_rep.add_argument("--dal", default=None)
    p_rep.add_argument("--al", default=None)
    p_rep.add_argument("--professionista-id", type=int, default=None)
    p_rep.set_defaults(func=cmd_report)

    return p


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    parser = build_parser()
    args = parser.parse_args(argv)
    init_db()  # garantisce tabelle
    try:
        args.func(args)
    except ClinicError as e:
        print(f"Errore: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
