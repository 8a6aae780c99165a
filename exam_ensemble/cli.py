import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from .config import EnsembleConfig, load_config
from .errors import EnsembleExhausted, describe_error
from .io import (
    generate_run_id, load_questions, write_resolved_config, append_call_log,
    read_call_log, write_results, write_stats,
)
from .solver import QuestionSolver
from .stats import compute_stats

EXIT_EXHAUSTED = 2


def _config_from_args(args) -> EnsembleConfig:
    return load_config(args.config) if args.config else EnsembleConfig()


def _make_solver(config: EnsembleConfig, out_dir: Optional[str]) -> QuestionSolver:
    run_id = generate_run_id()
    on_attempt = None
    if out_dir:
        write_resolved_config(out_dir, config)

        def on_attempt(record):
            append_call_log(out_dir, record)

    return QuestionSolver(config, run_id=run_id, on_attempt=on_attempt)


def _exhausted_payload(e: EnsembleExhausted) -> dict:
    return {
        "error": e.kind.value,
        "message": describe_error(e.kind),
        "providers": {pid: kind.value if kind else None for pid, kind in e.provider_errors.items()},
    }


def cmd_solve(args) -> int:
    config = _config_from_args(args)
    questions = load_questions(args.question)
    if len(questions) != 1:
        print(f"Expected one question in {args.question}, found {len(questions)}; use batch", file=sys.stderr)
        return 1
    question = questions[0]
    solver = _make_solver(config, args.out)

    try:
        result = asyncio.run(solver.solve(question))
    except EnsembleExhausted as e:
        payload = _exhausted_payload(e)
        exit_code = EXIT_EXHAUSTED
    else:
        payload = result.model_dump(mode="json")
        exit_code = 0

    if args.out:
        write_results(args.out, solver.run_id, [{"question": question.text, **payload}])
        write_stats(args.out, compute_stats(read_call_log(args.out)))
    print(json.dumps(payload, indent=2))
    return exit_code


def cmd_batch(args) -> int:
    config = _config_from_args(args)
    questions = load_questions(args.questions)
    solver = _make_solver(config, args.out)

    outcomes = asyncio.run(solver.solve_many(questions))

    items = []
    for q, outcome in zip(questions, outcomes):
        item = {"question": q.text, "number": q.number}
        if isinstance(outcome, EnsembleExhausted):
            item.update(_exhausted_payload(outcome))
        else:
            item.update(outcome.model_dump(mode="json"))
        items.append(item)

    summary = write_results(args.out, solver.run_id, items)
    write_stats(args.out, compute_stats(read_call_log(args.out)))
    print(f"Batch complete: {summary['answered']}/{len(items)} answered. Output: {args.out}")
    return EXIT_EXHAUSTED if items and not summary["answered"] else 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="exam-ensemble")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    solve_parser = subparsers.add_parser("solve", help="Answer a single question")
    solve_parser.add_argument("--config", help="Config JSON file")
    solve_parser.add_argument("--question", required=True, help="Question JSON file")
    solve_parser.add_argument("--out", help="Output directory for call logs and stats")
    solve_parser.set_defaults(func=cmd_solve)

    batch_parser = subparsers.add_parser("batch", help="Answer a list of questions")
    batch_parser.add_argument("--config", help="Config JSON file")
    batch_parser.add_argument("--questions", required=True, help="JSON list of questions")
    batch_parser.add_argument("--out", required=True, help="Output directory")
    batch_parser.set_defaults(func=cmd_batch)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
