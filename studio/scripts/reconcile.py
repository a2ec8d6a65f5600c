from __future__ import annotations

import argparse
import asyncio
import json

from studio.config import get_settings
from studio.db.session import create_engine, create_sessionmaker
from studio.services.reconciliation import ReconciliationService
from studio.utils.logging import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Replay pending refunds and audit ledger balances.')
    sub = parser.add_subparsers(dest='command', required=True)

    replay = sub.add_parser('replay', help='re-apply refunds that could not be written')
    replay.add_argument('--limit', type=int, default=100)

    sub.add_parser('pending', help='list unresolved pending refunds')

    audit = sub.add_parser('audit', help='compare balances with ledger sums')
    audit.add_argument('--account', default=None, help='audit one account instead of all')
    return parser


async def run(args: argparse.Namespace) -> int:
    engine = create_engine()
    sessionmaker = create_sessionmaker(engine)
    exit_code = 0
    async with sessionmaker() as session:
        service = ReconciliationService(session)
        if args.command == 'replay':
            summary = await service.replay_pending_refunds(args.limit)
            print(json.dumps(summary.as_dict()))
            exit_code = 1 if summary.failed else 0
        elif args.command == 'pending':
            for row in await service.pending_refunds():
                print(json.dumps({
                    'id': row.id,
                    'account_id': row.account_id,
                    'generation_id': row.generation_id,
                    'amount': row.amount,
                    'error': row.error,
                }))
        else:
            if args.account:
                audits = [await service.audit_account(args.account)]
            else:
                audits = await service.audit_all()
            for audit in audits:
                print(json.dumps(audit.as_dict()))
                if not audit.ok:
                    exit_code = 1

    await engine.dispose()
    return exit_code


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    args = build_parser().parse_args()
    raise SystemExit(asyncio.run(run(args)))


if __name__ == '__main__':
    main()
