#!/usr/bin/env python3
# Keystone CLI v1.0.0
# argparse. Operator jobs for cron and admin remediation.

import argparse
import json
import sys
import time

from errors import Rejection
from marketplace import get_marketplace
from models import Actor


def _fail(message):
    print(message, file=sys.stderr)
    sys.exit(1)


def _json(obj):
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def cmd_sweep(args):
    """Run the time-driven transitions once."""
    mp = get_marketplace()
    summary = mp.sweep_expired(now=args.now)
    print(f"Cancelled: {summary['cancelled_count']} | "
          f"Auto-released: {summary['auto_released_count']} | "
          f"Overdue notices: {summary['overdue_count']}")


def cmd_dispatch_events(args):
    """Deliver pending outbox events in order."""
    result = get_marketplace().dispatch_events(limit=args.limit)
    print(f"Delivered {result['delivered']} event(s).")
    if result.get("failed_event_id"):
        print(f"  Stopped at {result['failed_event_id']}; will retry next run.")


def cmd_dispatch_intents(args):
    """Submit settlement intents that never reached the settlement service."""
    counts = get_marketplace().dispatch_intents(limit=args.limit)
    print("  ".join(f"{k}={v}" for k, v in sorted(counts.items())))


def cmd_retry_intent(args):
    """Retry a stalled or failed settlement intent (admin)."""
    actor = Actor(user_id=args.admin, is_admin=True)
    result = get_marketplace().retry_intent(actor, args.intent_id)
    if isinstance(result, Rejection):
        _fail(f"Refused: {result.code}: {result.message}")
    print(f"Intent {result.intent_id}: {result.status}")


def cmd_reputation_sync(args):
    """Recompute reputation for one user, or everyone."""
    rep = get_marketplace().reputation
    if args.user:
        _json(rep.sync_user(args.user))
        return
    result = rep.sync_all()
    print(f"Synced {result['users_synced']} user(s) | "
          f"badges minted: {result['badges_minted']} | "
          f"achievements: {result['achievements_awarded']}")


def cmd_reputation_decay(args):
    """Apply inactivity decay."""
    result = get_marketplace().reputation.apply_decay(now=args.now)
    print(f"Decayed {result['users_decayed']} user(s), "
          f"{result['total_decay_applied']} point(s) total.")


def cmd_reputation_verify(args):
    """Recompute a user's reputation from history and compare with the stored record."""
    result = get_marketplace().reputation.verify_reputation_integrity(args.user)
    if result["valid"]:
        print(f"{args.user}: reputation consistent.")
        return
    print(f"{args.user}: {len(result['issues'])} issue(s)")
    for issue in result["issues"]:
        print(f"  - {issue}")
    sys.exit(1)


def cmd_verify_chain(args):
    """Replay the event hash chain."""
    result = get_marketplace().events.verify_chain()
    if result["valid"]:
        print(f"Chain valid: {result['events_checked']} event(s) checked.")
        return
    _fail(f"Chain BROKEN at {result['broken_at']} after {result['events_checked']} event(s).")


def cmd_reap_sessions(args):
    """Demote quiet workspace sessions and purge old disconnected ones."""
    ws = get_marketplace().workspace
    now = args.now if args.now is not None else time.time()
    reaped = ws.reap_stale(now)
    purged = ws.purge(now)
    print(f"Idle: {reaped['idle']} | Disconnected: {reaped['disconnected']} | Purged: {purged}")


def cmd_job(args):
    """Show a job with its milestones, bids, disputes and invoices."""
    mp = get_marketplace()
    detail = mp.job_detail(args.job_id)
    if isinstance(detail, Rejection):
        _fail(f"Job {args.job_id} not found.")
    if args.timeline:
        detail["timeline"] = mp.job_timeline(args.job_id)
    _json(detail)


def main():
    parser = argparse.ArgumentParser(
        prog="keystone",
        description="Keystone — freelance escrow operations",
    )
    sub = parser.add_subparsers(dest="command")

    # keystone sweep
    p_sweep = sub.add_parser("sweep", help="Expire postings, auto-release, flag overdue")
    p_sweep.add_argument("--now", type=float, default=None, help="Override clock (epoch seconds)")
    p_sweep.set_defaults(func=cmd_sweep)

    # keystone dispatch-events
    p_ev = sub.add_parser("dispatch-events", help="Deliver the event outbox")
    p_ev.add_argument("--limit", type=int, default=100)
    p_ev.set_defaults(func=cmd_dispatch_events)

    # keystone dispatch-intents
    p_int = sub.add_parser("dispatch-intents", help="Submit pending settlement intents")
    p_int.add_argument("--limit", type=int, default=100)
    p_int.set_defaults(func=cmd_dispatch_intents)

    # keystone retry-intent
    p_retry = sub.add_parser("retry-intent", help="Retry a stalled or failed intent")
    p_retry.add_argument("intent_id")
    p_retry.add_argument("--admin", required=True, help="Admin user id performing the retry")
    p_retry.set_defaults(func=cmd_retry_intent)

    # keystone reputation-sync
    p_rs = sub.add_parser("reputation-sync", help="Recompute reputation")
    p_rs.add_argument("--user", default=None, help="Only this user")
    p_rs.set_defaults(func=cmd_reputation_sync)

    # keystone reputation-decay
    p_rd = sub.add_parser("reputation-decay", help="Apply inactivity decay")
    p_rd.add_argument("--now", type=float, default=None)
    p_rd.set_defaults(func=cmd_reputation_decay)

    # keystone reputation-verify
    p_rv = sub.add_parser("reputation-verify", help="Check a user's stored reputation")
    p_rv.add_argument("user")
    p_rv.set_defaults(func=cmd_reputation_verify)

    # keystone verify-chain
    p_vc = sub.add_parser("verify-chain", help="Verify the event hash chain")
    p_vc.set_defaults(func=cmd_verify_chain)

    # keystone reap-sessions
    p_reap = sub.add_parser("reap-sessions", help="Expire quiet workspace sessions")
    p_reap.add_argument("--now", type=float, default=None)
    p_reap.set_defaults(func=cmd_reap_sessions)

    # keystone job
    p_job = sub.add_parser("job", help="Show a job")
    p_job.add_argument("job_id")
    p_job.add_argument("--timeline", action="store_true", help="Include the event timeline")
    p_job.set_defaults(func=cmd_job)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
