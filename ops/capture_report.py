import json
import os
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

LOG_PATH = Path(__file__).resolve().parents[1] / "logs" / "events.jsonl"


def read_jsonl(path: Path) -> Iterable[Dict[str, Any]]:
    if not path.exists():
        return []
    records: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                # Skip malformed lines rather than crashing ops reporting
                continue
    return records


def summarize(records: Iterable[Dict[str, Any]]) -> Dict[str, Counter]:
    event_counts: Counter = Counter()
    rejection_reasons: Counter = Counter()
    orgs_accepted: Counter = Counter()
    failure_stages: Counter = Counter()

    for r in records:
        event_name = r.get("event")
        if not event_name:
            continue
        event_counts[event_name] += 1

        if event_name == "capture_rejected":
            rejection_reasons[str(r.get("reason", "UNKNOWN"))] += 1
        elif event_name == "capture_accepted":
            orgs_accepted[str(r.get("org_id"))] += int(r.get("ingested_count") or 0)
        elif event_name in {"capture_transient_failure", "capture_failed"}:
            failure_stages[str(r.get("stage", "unknown"))] += 1

    return {
        "events": event_counts,
        "rejection_reasons": rejection_reasons,
        "ingested_by_org": orgs_accepted,
        "failure_stages": failure_stages,
    }


def _print_section(title: str, counts: Counter, empty_hint: str, limit: Optional[int] = None) -> None:
    print(f"---- {title} ----")
    if not counts:
        print(empty_hint)
    for k, v in counts.most_common(limit):
        print(f"{k}: {v}")
    print()


def main(path: Optional[Path] = None) -> None:
    log_path = path or Path(os.getenv("EVENT_LOG_PATH") or LOG_PATH)
    records = list(read_jsonl(log_path))

    if not records:
        print("No log records found yet.")
        print(f"Expected log file at: {log_path}")
        print("Send some signed captures to POST /capture, then rerun this report.")
        return

    summary = summarize(records)

    print("=== EPCIS Capture Gateway Ops Report ===")
    print(f"Log file: {log_path}")
    print(f"Total records: {len(records)}")
    print()

    _print_section("Capture Event Counts", summary["events"], "No capture events found yet.")
    _print_section("Rejection Reasons", summary["rejection_reasons"], "No rejected requests.")
    _print_section("Events Ingested by Organization", summary["ingested_by_org"], "Nothing ingested yet.", 10)
    _print_section("Uncached Failures by Stage", summary["failure_stages"], "No transient or internal failures.")


if __name__ == "__main__":
    main(Path(sys.argv[1]) if len(sys.argv) > 1 else None)
