import argparse
import asyncio
import json
import sys

from . import config
from .gateway import sign_payload
from .infra.log import configure_logging


async def _init_db() -> None:
    from .server import build_services, init_db
    services = build_services()
    try:
        await init_db(services)
    finally:
        await services.aclose()


async def _sweep(job: str) -> int:
    from .server import build_services, init_db
    services = build_services()
    try:
        await init_db(services)
        count = await services.scheduler.run_once(job)
        # redriven tasks run in the background; let them finish
        await services.fulfillment.drain()
        return count or 0
    finally:
        await services.aclose()


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(
        prog="festix",
        description="Festival ticket orders and payments",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")

    sub.add_parser("init-db", help="create missing tables")

    sweep = sub.add_parser("sweep", help="run one scheduler job now")
    sweep.add_argument(
        "job",
        choices=["first_reminder", "second_reminder", "expire_pending",
                 "fulfillment_redrive"],
    )

    sign = sub.add_parser(
        "sign", help="sign a gateway callback body (JSON file or '-')"
    )
    sign.add_argument("file", nargs="?", default="-")
    sign.add_argument("--key", default=None,
                      help="signature key (default: MAIB_SIGNATURE_KEY)")

    args = ap.parse_args(argv)

    if args.cmd == "serve":
        import uvicorn
        uvicorn.run("festix.server:app", host=args.host, port=args.port,
                    reload=args.reload)
        return 0

    configure_logging()

    if args.cmd == "init-db":
        asyncio.run(_init_db())
        print("tables created")
        return 0

    if args.cmd == "sweep":
        count = asyncio.run(_sweep(args.job))
        print(f"{args.job}: {count}")
        return 0

    # sign
    if args.file == "-":
        body = json.load(sys.stdin)
    else:
        with open(args.file) as f:
            body = json.load(f)
    body["signature"] = sign_payload(body, args.key or config.MAIB_SIGNATURE_KEY)
    print(json.dumps(body, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
