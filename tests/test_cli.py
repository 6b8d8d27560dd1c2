# giftguard/tests/test_cli.py
import argparse

import httpx
import pytest

from giftguard.services.cli import replay_threats
from giftguard.services.cli.replay_threats import bounded_limit, format_report, parse_args

PAYLOAD = {
    "replay": {
        "total_analyzed": 4, "blocked_correctly": 1, "gap_closed": 1,
        "still_missed": 1, "false_positive": 0, "clean": 1, "errored": 0, "new_rules_suggested": 1,
        "reports": [{"suggested_rule": {
            "type": "ip", "value": "6.6.6.6", "confidence": 90,
            "reason": "IP attempting to reuse already redeemed gift cards",
        }}],
    },
    "learning": {
        "rules_created": 1, "rules_failed": 0, "clusters_considered": 0, "actions_created": 0,
        "learning_effectiveness": 63.0, "recommendations": ["Successfully created 1 new defense rules"],
    },
}


class TestArguments:
    def test_limit_bounds(self):
        assert bounded_limit("1") == 1
        assert bounded_limit("200") == 200
        with pytest.raises(argparse.ArgumentTypeError):
            bounded_limit("0")
        with pytest.raises(argparse.ArgumentTypeError):
            bounded_limit("201")

    def test_defaults(self):
        args = parse_args([])
        assert args.limit == 100
        assert args.debug is False

    def test_out_of_range_exits(self):
        with pytest.raises(SystemExit):
            parse_args(["500"])


class TestReport:
    def test_format_report(self):
        rules = [{"type": "ip", "value": "6.6.6.6", "hit_count": 2, "source": "replay"}]
        report = format_report(PAYLOAD, rules)
        assert "still missed:      1" in report
        assert "effectiveness:     63.0%" in report
        assert "[ip] 6.6.6.6 hits=2 source=replay" in report
        assert "Active defense rules (1)" in report
        assert "rules suggested:   1" in report
        assert "suggest [ip] 6.6.6.6 (90%)" in report
        assert report.index("suggest [ip]") < report.index("Learning")

    def test_main_returns_error_code_when_unreachable(self, monkeypatch):
        def boom(*args, **kwargs):
            raise httpx.ConnectError("connection refused")

        monkeypatch.setattr(replay_threats, "run", boom)
        assert replay_threats.main(["10"]) == 1

    def test_main_prints_report(self, monkeypatch, capsys):
        monkeypatch.setattr(replay_threats, "run", lambda *args: "Threat replay\n  analyzed: 4")
        assert replay_threats.main(["10"]) == 0
        assert "analyzed: 4" in capsys.readouterr().out
