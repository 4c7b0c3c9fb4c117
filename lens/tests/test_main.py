"""
Tests for the command line entry point.
"""

import json
from decimal import Decimal

import pytest

import lens.main as cli

T0 = 1_700_000_000


@pytest.fixture(autouse=True)
def memory_backend(monkeypatch):
    monkeypatch.setenv("LENS_CACHE_BACKEND", "memory")
    monkeypatch.delenv("LENS_TRADE_SOURCE", raising=False)
    monkeypatch.delenv("LENS_HOLDER_SOURCE", raising=False)


class TestParseArgs:
    def test_global_flags_before_command(self, wallet):
        args = cli.parse_args(["--pretty", "--force-refresh", "--deadline", "5", "wallet", wallet])
        assert args.command == "wallet"
        assert args.address == wallet
        assert args.pretty and args.force_refresh
        assert args.deadline == 5.0

    def test_mint_launch_time(self, mint):
        args = cli.parse_args(["mint", mint, "--launch-ms", "1700000000000"])
        assert args.launch_ms == 1_700_000_000_000
        assert not args.force_refresh

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.parse_args([])


class TestMain:
    def test_invalid_address_exit_code(self, capsys):
        assert cli.main(["wallet", "not-a-wallet"]) == cli.EXIT_VALIDATION
        assert capsys.readouterr().out == ""

    def test_config_summary(self, capsys, monkeypatch):
        monkeypatch.setenv("LENS_TRADE_SOURCE", "helius")
        cli.main(["config"])
        assert "Lens Configuration Summary" in capsys.readouterr().out

    def test_wallet_report_printed_as_json(self, monkeypatch, capsys, build_engine, fake_helius,
                                           fake_prices, helius_tx, wallet, mint):
        history = [
            helius_tx("buy1", T0, wallet, mint, tokens=1000, sol=1, buy=True),
            helius_tx("sell1", T0 + 60, wallet, mint, tokens=500, sol="0.75", buy=False),
        ]
        helius = fake_helius(transactions={wallet: history})
        engine = build_engine(helius=helius, prices=fake_prices({mint: Decimal("0.002")}))
        monkeypatch.setattr(cli, "create_engine", lambda: engine)

        assert cli.main(["wallet", wallet]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report["wallet"] == wallet
        assert report["summary"]["totalRealizedPnL"] == pytest.approx(0.25)
        assert report["summary"]["positions"][0]["remainingTokens"] == pytest.approx(500)
        assert report["failures"] == []
        assert helius.closed
