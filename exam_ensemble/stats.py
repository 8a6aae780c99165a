from collections import Counter

STAGES = ("worker", "judge", "failover")


def compute_stats(attempts: list) -> dict:
    def make_bucket(items: list) -> dict:
        ok = [a for a in items if a.get("status") == "ok"]
        failed = [a for a in items if a.get("status") != "ok"]
        error_kinds = Counter(a.get("error_kind") or "unknown" for a in failed)

        ok_latencies = [a["latency_ms"] for a in ok if a.get("latency_ms") is not None]
        prompt_tokens = sum((a.get("usage") or {}).get("prompt_tokens", 0) or 0 for a in items)
        completion_tokens = sum((a.get("usage") or {}).get("completion_tokens", 0) or 0 for a in items)
        total_tokens = sum((a.get("usage") or {}).get("total_tokens", 0) or 0 for a in items)

        return {
            "attempts_total": len(items),
            "calls_ok": len(ok),
            "calls_failed": len(failed),
            "calls_overload": error_kinds.get("overload", 0),
            "calls_timeout": error_kinds.get("timeout", 0),
            "calls_unparseable": error_kinds.get("empty_or_unparseable", 0),
            "valid_rate": len(ok) / len(items) if items else 0.0,
            "avg_latency_ms_ok": sum(ok_latencies) / len(ok_latencies) if ok_latencies else 0.0,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": total_tokens,
        }

    overall = make_bucket(attempts)

    per_stage = {}
    for stage in STAGES:
        stage_attempts = [a for a in attempts if a.get("stage") == stage]
        if stage_attempts:
            per_stage[stage] = make_bucket(stage_attempts)

    per_stage_provider = {}
    for a in attempts:
        stage = a.get("stage")
        provider_id = a.get("provider_id")
        if stage and provider_id:
            per_stage_provider.setdefault(f"{stage}:{provider_id}", []).append(a)

    per_stage_provider = {k: make_bucket(v) for k, v in per_stage_provider.items()}

    return {
        "overall": overall,
        "per_stage": per_stage,
        "per_stage_provider": per_stage_provider,
    }
