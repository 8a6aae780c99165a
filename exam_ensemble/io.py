import csv
import json
import random
import string
from datetime import datetime
from pathlib import Path
from typing import Union

from .models import Question

CALL_LOG = "call_logs.jsonl"


def generate_run_id() -> str:
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{ts}_{rand}"


def _run_dir(out_dir: Union[str, Path]) -> Path:
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)
    return p


def load_questions(path: Union[str, Path]) -> list[Question]:
    """
    Read questions from a JSON file.

    The file holds one question payload, a list of payloads, or an object
    with a "questions" list. Payloads are bare strings or dicts in the
    shape accepted by Question.from_payload.
    """
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict) and "questions" in data:
        data = data["questions"]
    if not isinstance(data, list):
        data = [data]
    return [Question.from_payload(item) for item in data]


def write_resolved_config(out_dir: Union[str, Path], config) -> None:
    with open(_run_dir(out_dir) / "resolved_config.json", "w") as f:
        json.dump(config.model_dump(mode="json"), f, indent=2)


def append_call_log(out_dir: Union[str, Path], attempt_record: dict) -> None:
    with open(_run_dir(out_dir) / CALL_LOG, "a") as f:
        f.write(json.dumps(attempt_record, default=str) + "\n")


def read_call_log(out_dir: Union[str, Path]) -> list[dict]:
    path = Path(out_dir) / CALL_LOG
    if not path.exists():
        return []
    with open(path) as f:
        return [json.loads(line) for line in f if line.strip()]


def write_results(out_dir: Union[str, Path], run_id: str, items: list[dict]) -> dict:
    """Write results.json; items carrying an "error" key count as failed."""
    failed = sum(1 for item in items if "error" in item)
    summary = {
        "run_id": run_id,
        "answered": len(items) - failed,
        "failed": failed,
        "items": items,
    }
    with open(_run_dir(out_dir) / "results.json", "w") as f:
        json.dump(summary, f, indent=2)
    return summary


def _stats_rows(stats: dict) -> list[dict]:
    rows = [{"bucket": "overall", **stats["overall"]}]
    rows.extend({"bucket": f"stage:{stage}", **b} for stage, b in stats.get("per_stage", {}).items())
    rows.extend({"bucket": key, **b} for key, b in stats.get("per_stage_provider", {}).items())
    return rows


def write_stats(out_dir: Union[str, Path], stats: dict) -> None:
    p = _run_dir(out_dir)
    with open(p / "stats.json", "w") as f:
        json.dump(stats, f, indent=2)

    rows = _stats_rows(stats)
    with open(p / "stats.csv", "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=list(rows[0]))
        writer.writeheader()
        writer.writerows(rows)
