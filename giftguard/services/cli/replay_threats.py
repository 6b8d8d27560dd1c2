# giftguard/services/cli/replay_threats.py
"""Trigger a threat replay + learning run through the admin API.

Usage:
    giftguard-replay 50
    python -m giftguard.services.cli.replay_threats --url http://localhost:8000 100
"""

import argparse
import logging
import sys

import httpx

from giftguard.common.config import settings

LOG = logging.getLogger("replay_cli")

MIN_LIMIT = 1
MAX_LIMIT = 200


def bounded_limit(value: str) -> int:
    limit = int(value)
    if not MIN_LIMIT <= limit <= MAX_LIMIT:
        raise argparse.ArgumentTypeError(f"limit must be between {MIN_LIMIT} and {MAX_LIMIT}")
    return limit


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Replay recent fraud signals against current defenses (GiftGuard)")
    p.add_argument("limit", nargs="?", type=bounded_limit, default=100, help="How many recent signals to replay (1-200)")
    p.add_argument("--url", default=f"http://localhost:{settings.API_PORT}", help="Base URL of the GiftGuard API")
    p.add_argument("--api-key", default=settings.API_KEY, help="Admin API key (overrides .env)")
    p.add_argument("--timeout", type=float, default=60.0, help="HTTP timeout in seconds")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    return p.parse_args(argv)


def format_report(payload: dict, rules: list) -> str:
    replay = payload["replay"]
    learning = payload["learning"]
    lines = [
        "Threat replay",
        f"  analyzed:          {replay['total_analyzed']}",
        f"  blocked correctly: {replay['blocked_correctly']}",
        f"  gaps closed:       {replay['gap_closed']}",
        f"  still missed:      {replay['still_missed']}",
        f"  false positives:   {replay.get('false_positive', 0)}",
        f"  clean:             {replay['clean']}",
        f"  errored:           {replay['errored']}",
        f"  rules suggested:   {replay.get('new_rules_suggested', 0)}",
    ]
    for report in replay["reports"]:
        suggestion = report.get("suggested_rule")
        if suggestion:
            lines.append(f"  suggest [{suggestion['type']}] {suggestion['value']} "
                         f"({suggestion['confidence']}%): {suggestion['reason']}")
    lines += [
        "Learning",
        f"  rules created:     {learning['rules_created']}",
        f"  rules failed:      {learning['rules_failed']}",
        f"  clusters:          {learning['clusters_considered']}",
        f"  actions created:   {learning['actions_created']}",
        f"  effectiveness:     {learning['learning_effectiveness']}%",
    ]
    for recommendation in learning["recommendations"]:
        lines.append(f"  - {recommendation}")
    lines.append(f"Active defense rules ({len(rules)})")
    for rule in rules:
        lines.append(f"  [{rule['type']}] {rule['value']} hits={rule['hit_count']} source={rule['source']}")
    return "\n".join(lines)


def run(base_url: str, api_key: str, limit: int, timeout: float) -> str:
    headers = {"X-API-Key": api_key}
    with httpx.Client(base_url=base_url, headers=headers, timeout=timeout) as client:
        response = client.post("/api/v1/admin/threat-replay", params={"limit": limit})
        response.raise_for_status()
        rules = client.get("/api/v1/admin/defense-rules", params={"active_only": True})
        rules.raise_for_status()
    return format_report(response.json(), rules.json())


def main(argv=None):
    args = parse_args(argv)

    logging.basicConfig(stream=sys.stdout, level=logging.DEBUG if args.debug else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        print(run(args.url, args.api_key, args.limit, args.timeout))
    except httpx.HTTPStatusError as e:
        LOG.error("Replay request failed: %s %s", e.response.status_code, e.response.text)
        return 1
    except httpx.HTTPError as e:
        LOG.error("Could not reach GiftGuard API at %s: %s", args.url, e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
