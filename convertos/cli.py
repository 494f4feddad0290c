#!/usr/bin/env python3
"""
convertos — Operator command-line interface for ConvertOS Core.

Works directly against the configured database (DATABASE_URL).

Usage:
    convertos create-client "Acme Decks"
    convertos create-connection <client_id> "Main site" --webhook-url https://example.com/wp-json/convertos/v1/webhook
    convertos rotate-secret <connection_pk> [--force]
    convertos sweep-secrets
    convertos reprocess [--connection <connection_pk>] [--limit 100]
    convertos analyze act_123 [--date-preset last_7d]
"""
import argparse
import asyncio
import json
import sys

from convertos.api.deps import build_agent_service, build_ingestor, build_registry
from convertos.config import settings
from convertos.core.structured_logging import configure_logging
from convertos.db import Client, async_session_maker, init_db
from convertos.exceptions import ConvertOSError
from convertos.scripts.scheduled_tasks import sweep_expired_secrets


async def cmd_create_client(args):
    async with async_session_maker() as db:
        client = Client(name=args.name)
        db.add(client)
        await db.commit()
        print(f"Client created: {client.id}")


async def cmd_create_connection(args):
    async with async_session_maker() as db:
        connection, secret = await build_registry(db).create_connection(
            args.client_id, args.name, webhook_url=args.webhook_url
        )
        print(f"Connection:    {connection.id}")
        print(f"Connection ID: {connection.connection_id}")
        print(f"Secret:        {secret}")
        print("Store the secret now; it is not shown again.")


async def cmd_rotate_secret(args):
    async with async_session_maker() as db:
        result = await build_registry(db).rotate_secret(args.connection, force=args.force)
        print(f"New secret: {result.new_secret}")
        print(f"Previous secret valid until {result.previous_valid_until.isoformat()}")


async def cmd_sweep_secrets(args):
    cleared = await sweep_expired_secrets()
    print(f"Cleared {cleared} expired previous secret(s)")


async def cmd_reprocess(args):
    async with async_session_maker() as db:
        stats = await build_ingestor(db).reprocess_failed(args.connection, args.limit)
        print(f"Attempted {stats['attempted']}: {stats['processed']} processed, {stats['failed']} failed")


async def cmd_analyze(args):
    async with async_session_maker() as db:
        result = await build_agent_service(db).analyze(args.account_id, args.date_preset)
        if args.json:
            print(json.dumps(result, indent=2, default=str))
            return
        print(result["analysis_summary"])
        print(f"Data: {result['data_freshness']}")
        for rec in result["recommendations"]:
            print(f"  [{rec['risk_level']:6s}] {rec['type']:10s} {rec.get('entity_id') or rec.get('adset_id')}  {rec['reason']}")
        for rec in result["overflow_recommendations"]:
            print(f"  [over  ] {rec['type']:10s} {rec.get('entity_id') or rec.get('adset_id')}  {rec['reason']}")
        for rec in result["monitor_recommendations"]:
            print(f"  [watch ] {rec['type']:10s} {rec.get('entity_id')}  {rec['reason']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convertos",
        description="ConvertOS CLI — manage connections and run the ads agent",
    )
    sub = parser.add_subparsers(dest="command", help="Command")

    # create-client
    p_client = sub.add_parser("create-client", help="Create a client (tenant)")
    p_client.add_argument("name", help="Client name")
    p_client.set_defaults(func=cmd_create_client)

    # create-connection
    p_conn = sub.add_parser("create-connection", help="Create a WordPress connection and print its secret")
    p_conn.add_argument("client_id", help="Owning client id")
    p_conn.add_argument("name", help="Connection name")
    p_conn.add_argument("--webhook-url", default=None, help="Site webhook URL used by test pings")
    p_conn.set_defaults(func=cmd_create_connection)

    # rotate-secret
    p_rotate = sub.add_parser("rotate-secret", help="Rotate a connection secret")
    p_rotate.add_argument("connection", help="Connection primary key")
    p_rotate.add_argument("--force", action="store_true", help="Rotate even inside an active grace window")
    p_rotate.set_defaults(func=cmd_rotate_secret)

    # sweep-secrets
    p_sweep = sub.add_parser("sweep-secrets", help="Clear previous secrets past their grace window")
    p_sweep.set_defaults(func=cmd_sweep_secrets)

    # reprocess
    p_re = sub.add_parser("reprocess", help="Retry webhook events whose processing failed")
    p_re.add_argument("--connection", default=None, help="Limit to one connection primary key")
    p_re.add_argument("--limit", type=int, default=100, help="Max events to retry")
    p_re.set_defaults(func=cmd_reprocess)

    # analyze
    p_an = sub.add_parser("analyze", help="Print recommendations for an ad account")
    p_an.add_argument("account_id", help="Meta ad account id (act_...)")
    p_an.add_argument("--date-preset", default="last_7d", help="Analysis window preset")
    p_an.add_argument("--json", action="store_true", help="Print raw JSON")
    p_an.set_defaults(func=cmd_analyze)

    return parser


async def _run(args):
    await init_db()
    await args.func(args)


def main():
    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    configure_logging(settings.log_level, settings.structured_logging)
    try:
        asyncio.run(_run(args))
    except ConvertOSError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
