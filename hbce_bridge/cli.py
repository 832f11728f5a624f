from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from .bridge import GateBridge
from .config import BridgeConfig
from .errors import PersistenceFailure
from .gate import Accepted
from .ledger import LedgerStore, export_record, load_signing_key, public_key_pem, sign_export
from .replay_guard import ReplayGuard
from .state import LEDGER_EXPORT, replay

log = logging.getLogger(__name__)


def _bridge(args: argparse.Namespace) -> GateBridge:
    return GateBridge.open(BridgeConfig.load(args.config))


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    cfg = BridgeConfig.load(args.config)
    bridge = GateBridge.open(cfg)
    log.info("status: http://%s:%s/status", cfg.host, cfg.port)
    uvicorn.run(create_app(bridge), host=cfg.host, port=cfg.port, log_level=args.log_level.lower())
    return 0


def cmd_poll(args: argparse.Namespace) -> int:
    from .transport import EventSource, Poller

    cfg = BridgeConfig.load(args.config)
    try:
        source = EventSource(
            event_url=cfg.poll.event_url,
            pointer_url=cfg.poll.pointer_url,
            timeout=cfg.poll.timeout_seconds,
        )
    except ValueError as e:
        print(f"poll: {e} (set poll.event_url / poll.pointer_url or HBCE_EVENT_URL / HBCE_POINTER_URL)", file=sys.stderr)
        return 2

    poller = Poller(GateBridge.open(cfg), source)
    iterations = 1 if args.once else args.iterations
    try:
        poller.run(iterations=iterations, interval=cfg.poll.interval_seconds)
    except KeyboardInterrupt:
        log.info("poll loop stopped")
    return 0


def cmd_deliver(args: argparse.Namespace) -> int:
    if args.file == "-":
        data = sys.stdin.buffer.read()
    else:
        try:
            data = Path(args.file).read_bytes()
        except OSError as e:
            # An unreadable event is a transport failure, not permission.
            bridge = _bridge(args)
            result = bridge.report_transport_failure(f"read {args.file}: {e}")
            print(json.dumps(result.to_dict(), indent=2))
            return 1

    result = _bridge(args).deliver(data)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if isinstance(result.verdict, Accepted) else 1


def cmd_status(args: argparse.Namespace) -> int:
    cfg = BridgeConfig.load(args.config)
    state, _ = replay(LedgerStore(cfg.ledger_path).read_all())
    guard = ReplayGuard(cfg.counter_path)
    print(
        json.dumps(
            {"state": state.to_dict(), "last_applied_event_id": guard.last_applied_event_id},
            indent=2,
        )
    )
    return 0


def cmd_replay(args: argparse.Namespace) -> int:
    cfg = BridgeConfig.load(args.config)
    ledger = LedgerStore(cfg.ledger_path)
    state, counter = replay(ledger.read_all())
    guard = ReplayGuard(cfg.counter_path)
    consistent = counter == guard.last_applied_event_id
    print(
        json.dumps(
            {
                "state": state.to_dict(),
                "last_applied_event_id": counter,
                "counter_file": guard.last_applied_event_id,
                "consistent": consistent,
                "ledger_ok": ledger.verify().get("ok"),
            },
            indent=2,
        )
    )
    return 0 if consistent else 1


def cmd_ledger(args: argparse.Namespace) -> int:
    cfg = BridgeConfig.load(args.config)
    ledger = LedgerStore(cfg.ledger_path)

    if args.ledger_cmd == "tail":
        print(json.dumps(ledger.tail(args.n), indent=2))
        return 0

    if args.ledger_cmd == "verify":
        report = ledger.verify()
        print(json.dumps(report, indent=2))
        return 0 if report.get("ok") else 1

    if args.ledger_cmd == "export":
        data = ledger.export()
        try:
            ledger.append(LEDGER_EXPORT, export_record(data))
        except PersistenceFailure as e:
            log.error("export not recorded in ledger: %s", e)
        if args.out:
            out = Path(args.out)
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(data)
            print(str(out))
        else:
            sys.stdout.buffer.write(data)
            sys.stdout.flush()

        if args.sign_key:
            key = load_signing_key(args.sign_key)
            sig_path = Path(args.signature_out or (f"{args.out}.sig.json" if args.out else "ledger_export.sig.json"))
            sig_path.write_text(
                json.dumps(
                    {"signature": sign_export(data, key), "public_key_pem": public_key_pem(key)},
                    indent=2,
                ),
                encoding="utf-8",
            )
            print(str(sig_path), file=sys.stderr)
        return 0

    raise SystemExit("unknown ledger command")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="hbce-bridge", description="HBCE Bridge: fail-closed drone control gate")
    p.add_argument("--config", default=None, help="YAML config path (default: $HBCE_CONFIG or config/hbce_bridge.yaml)")
    p.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("serve", help="Run the HTTP push endpoint and status surface")
    sp.set_defaults(func=cmd_serve)

    pp = sub.add_parser("poll", help="Poll a remote event (or pointer) document")
    pp.add_argument("--once", action="store_true", help="Single poll then exit")
    pp.add_argument("--iterations", type=int, default=None, help="Number of polls (default: forever)")
    pp.set_defaults(func=cmd_poll)

    dp = sub.add_parser("deliver", help="Deliver one event from a file (or - for stdin)")
    dp.add_argument("file")
    dp.set_defaults(func=cmd_deliver)

    stp = sub.add_parser("status", help="Print ledger-derived state and the persisted counter")
    stp.set_defaults(func=cmd_status)

    rp = sub.add_parser("replay", help="Rebuild state from the ledger and check it against the counter")
    rp.set_defaults(func=cmd_replay)

    lp = sub.add_parser("ledger", help="Ledger tools")
    lsub = lp.add_subparsers(dest="ledger_cmd", required=True)
    tp = lsub.add_parser("tail")
    tp.add_argument("-n", type=int, default=10)
    lsub.add_parser("verify")
    ep = lsub.add_parser("export")
    ep.add_argument("--out", default="", help="Write export here instead of stdout")
    ep.add_argument("--sign-key", default="", help="PEM EC private key for a detached signature")
    ep.add_argument("--signature-out", default="", help="Signature JSON path")
    lp.set_defaults(func=cmd_ledger)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
