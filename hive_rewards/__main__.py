"""Operator entry point for the settlement engine"""
import argparse
import json
import logging
import sys

from hive_rewards.config import SECRET_FIELDS, Settings
from hive_rewards.container import Container
from hive_rewards.errors import SettlementError
from hive_rewards.models.db import Job

logger = logging.getLogger(__name__)


def _job_dict(job: Job) -> dict:
    return {
        'id': job.id,
        'type': job.type,
        'status': job.status,
        'attempts': job.attempts,
        'max_attempts': job.max_attempts,
        'run_at': job.run_at.isoformat() if job.run_at else None,
        'locked_by': job.locked_by,
        'last_error': job.last_error,
        'created_at': job.created_at.isoformat() if job.created_at else None,
    }


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='hive_rewards', description='Reward accounting and settlement engine')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('init-db', help='Create database tables')
    subparsers.add_parser('worker', help='Run the job worker until interrupted')

    payouts = subparsers.add_parser('calculate-payouts', help='Calculate payouts for a cycle')
    payouts.add_argument('cycle_id')

    jobs = subparsers.add_parser('jobs', help='List jobs')
    jobs.add_argument('--status', choices=['pending', 'running', 'succeeded', 'failed'])
    jobs.add_argument('--limit', type=int, default=50)

    retry = subparsers.add_parser('retry-job', help='Requeue a failed job')
    retry.add_argument('job_id')

    cleanup = subparsers.add_parser('cleanup-jobs', help='Delete old succeeded jobs')
    cleanup.add_argument('--days', type=int, default=None)

    reclaim = subparsers.add_parser('reclaim-jobs', help='Requeue running jobs whose worker stopped responding')
    reclaim.add_argument('--minutes', type=int, default=None)

    release = subparsers.add_parser('release-locks', help='Release stake locks matured by a cycle')
    release.add_argument('cycle_number', type=int)

    subparsers.add_parser('requeue-transfers', help='Requeue pending or failed pool transfers')
    return parser


def run(argv=None) -> None:
    args = build_parser().parse_args(argv)
    settings = Settings()

    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    safe_config = settings.model_dump(exclude=SECRET_FIELDS)
    logger.debug(f"Using configuration: {json.dumps(safe_config, default=str)}")

    try:
        container = Container(settings)
        container.database.init(create_tables=args.command == 'init-db')

        if args.command == 'init-db':
            _print({'ok': True})
        elif args.command == 'worker':
            container.worker.start()
        elif args.command == 'calculate-payouts':
            result = container.payouts.calculate_payouts(args.cycle_id)
            _print(result.model_dump())
            if not result.success:
                sys.exit(1)
        elif args.command == 'jobs':
            _print([_job_dict(job) for job in container.queue.get_jobs_by_status(args.status, args.limit)])
        elif args.command == 'retry-job':
            _print(_job_dict(container.queue.retry(args.job_id)))
        elif args.command == 'cleanup-jobs':
            days = args.days if args.days is not None else settings.job_worker.retention_days
            _print({'deleted': container.queue.cleanup_old_jobs(days)})
        elif args.command == 'reclaim-jobs':
            minutes = args.minutes if args.minutes is not None else settings.job_worker.stale_lock_minutes
            _print({'reclaimed': container.queue.reclaim_stale(minutes)})
        elif args.command == 'release-locks':
            _print({'released': container.stakes.release_matured_locks(args.cycle_number)})
        elif args.command == 'requeue-transfers':
            _print({'job_ids': container.pool.requeue_pending_transfers()})

    except SettlementError as e:
        logger.error(f"{args.command} failed: {e.message}")
        _print(e.to_dict())
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error during {args.command}: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
