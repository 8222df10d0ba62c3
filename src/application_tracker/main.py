import argparse
import logging
import threading

from .ingest import iter_jsonl
from .pipeline import MATCHED, BatchResult, Pipeline
from .settings import load_settings


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _report(pipeline: Pipeline, batch: BatchResult) -> None:
    for o in batch.outcomes:
        if o.outcome == MATCHED:
            app = pipeline.store.get_application(o.application_id)
            print(f"[PROCESS] {o.message_id} | {app.company} | {app.job_title} | {app.status} | {o.application_id}"
                  + (" | fallback" if o.used_fallback else ""))
        else:
            print(f"[PROCESS] {o.message_id} | {o.outcome}" + (f" | {o.detail}" if o.detail else ""))


def process_once(args) -> None:
    cfg = load_settings(args.config)
    _configure_logging(cfg.app.get("log_level", "INFO"))
    account = args.account or cfg.app.get("account", "me")
    tz = cfg.app.get("timezone", "UTC")

    pipeline = Pipeline.from_settings(cfg, db_path=":memory:" if args.dry_run else None)
    cancel = threading.Event()
    try:
        if args.list_review:
            for state in pipeline.tracker.store.list_states(needs_review=True, account=account):
                print(f"[REVIEW] {state.message_id} | {state.stage.value} | {state.review_reason}")
            return
        if args.purge_attempts:
            removed = pipeline.store.purge_attempts(args.purge_attempts)
            print(f"[PROCESS] purged {removed} extraction attempts from {args.purge_attempts}")

        totals = {}
        batches = []
        if args.retry_failed:
            retry = pipeline.retry_failed(account)
            print(f"[PROCESS] retrying {len(retry)} failed messages")
            batches.append(retry)
        if args.input:
            batches = iter_batches(batches, args.input, account, cfg.pipeline["page_size"], tz)

        try:
            for messages in batches:
                batch = pipeline.run(messages, cancel)
                _report(pipeline, batch)
                for k, v in batch.counts.items():
                    totals[k] = totals.get(k, 0) + v
        except KeyboardInterrupt:
            cancel.set()
            print("[PROCESS] interrupted; unfinished messages stay pending")

        if args.dedupe:
            merged = pipeline.deduplicate()
            print(f"[PROCESS] merged {len(merged)} duplicate applications")

        summary = ", ".join(f"{k}={v}" for k, v in sorted(totals.items())) or "nothing to do"
        print(f"[PROCESS] done: {summary}")
    finally:
        pipeline.close()


def iter_batches(first, path: str, account: str, page_size: int, tz: str):
    for batch in first:
        yield batch
    for page in iter_jsonl(path, account, page_size=page_size, tz=tz):
        yield page


def main():
    parser = argparse.ArgumentParser(description="Job application tracker (email pipeline)")
    parser.add_argument("--input", help="JSON-lines export of messages to process")
    parser.add_argument("--account", help="Mailbox account the messages belong to")
    parser.add_argument("--config", help="Path to config.yaml (default: repo root or $JAT_CONFIG)")
    parser.add_argument("--dry-run", action="store_true", help="Use an in-memory database; nothing is saved")
    parser.add_argument("--dedupe", action="store_true", help="Merge duplicate application records afterwards")
    parser.add_argument("--retry-failed", action="store_true", help="Reset failed messages and run them again")
    parser.add_argument("--list-review", action="store_true", help="List messages waiting for review and exit")
    parser.add_argument("--purge-attempts", metavar="MODEL_ID", help="Delete stored extraction attempts made by one backend")
    args = parser.parse_args()
    process_once(args)


if __name__ == "__main__":
    main()
