from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from candlesync.cli import EXIT_CONFIG_ERROR, EXIT_JOB_FAILURE, EXIT_OK, build_arg_parser, main
from candlesync.config import load_credentials, parse_dt, parse_tickers, resolve_database_url
from candlesync.errors import ConfigError, FetchUnauthorizedError
from candlesync.types import Granularity, JobStatus, SyncResult, SyncSummary


@pytest.fixture
def oanda_env(monkeypatch):
    monkeypatch.setenv("OANDA_ACCOUNT_ID", "101-001-0000000-001")
    monkeypatch.setenv("OANDA_ACCESS_TOKEN", "secret-token")
    monkeypatch.delenv("DATABASE_URL", raising=False)


def _summary(*statuses: JobStatus, aborted: bool = False) -> SyncSummary:
    results = tuple(
        SyncResult(
            instrument=f"I{i}",
            granularity=Granularity.DAILY,
            status=status,
            candles_fetched=10,
            candles_written=10 if status is not JobStatus.FAILED else 0,
            error=None if status is JobStatus.SUCCEEDED else "boom",
        )
        for i, status in enumerate(statuses)
    )
    return SyncSummary(results=results, aborted=aborted)


def test_parser_defaults() -> None:
    args = build_arg_parser().parse_args([])

    assert args.db is None
    assert args.granularity is None
    assert args.batch_size == 500
    assert args.workers == 1
    assert args.environment == "live"
    assert args.full is False
    assert args.complete_only is False
    assert args.max_candles is None


def test_parser_accepts_granularity_codes_and_names() -> None:
    args = build_arg_parser().parse_args(["-g", "d", "--granularity", "weekly", "-g", "M"])
    assert args.granularity == [Granularity.DAILY, Granularity.WEEKLY, Granularity.MONTHLY]


def test_parser_rejects_unknown_granularity() -> None:
    with pytest.raises(SystemExit):
        build_arg_parser().parse_args(["-g", "H1"])


def test_missing_credentials_exit_with_config_error(monkeypatch, tmp_path, capsys) -> None:
    monkeypatch.delenv("OANDA_ACCOUNT_ID", raising=False)
    monkeypatch.delenv("OANDA_ACCESS_TOKEN", raising=False)

    code = main(["--db", str(tmp_path / "x.db")])

    assert code == EXIT_CONFIG_ERROR
    assert "OANDA_ACCESS_TOKEN" in capsys.readouterr().err


def test_invalid_history_start_is_config_error(oanda_env, tmp_path) -> None:
    assert main(["--db", str(tmp_path / "x.db"), "--history-start", "yesterday"]) == EXIT_CONFIG_ERROR


def test_invalid_batch_size_is_config_error(oanda_env, tmp_path) -> None:
    assert main(["--db", str(tmp_path / "x.db"), "--batch-size", "0"]) == EXIT_CONFIG_ERROR


def test_invalid_retry_settings_exit_via_parser(oanda_env, tmp_path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--db", str(tmp_path / "x.db"), "--max-retries", "0"])
    assert excinfo.value.code == 2


def test_successful_run_prints_summary_and_exits_zero(oanda_env, tmp_path, capsys) -> None:
    with patch("candlesync.cli.OandaClient") as mock_client, patch(
        "candlesync.cli.SyncOrchestrator"
    ) as mock_orchestrator:
        mock_orchestrator.return_value.sync.return_value = _summary(JobStatus.SUCCEEDED, JobStatus.SUCCEEDED)

        code = main(
            [
                "--db",
                str(tmp_path / "oanda.db"),
                "--environment",
                "practice",
                "--tickers",
                "EUR_USD, xau_",
                "-g",
                "D",
            ]
        )

    assert code == EXIT_OK
    out = capsys.readouterr().out
    assert "Candle sync summary" in out
    assert "Succeeded: 2" in out
    assert (tmp_path / "oanda.db").exists()

    assert mock_client.call_args.kwargs["environment"] == "practice"
    assert mock_client.call_args.kwargs["credentials"].account_id == "101-001-0000000-001"
    config = mock_orchestrator.call_args.kwargs["config"]
    assert config.tickers == ("eur_usd", "xau_")
    assert config.granularities == (Granularity.DAILY,)
    mock_client.return_value.close.assert_called_once()


def test_any_failed_job_exits_one(oanda_env, tmp_path, capsys) -> None:
    with patch("candlesync.cli.OandaClient"), patch("candlesync.cli.SyncOrchestrator") as mock_orchestrator:
        mock_orchestrator.return_value.sync.return_value = _summary(
            JobStatus.SUCCEEDED, JobStatus.PARTIALLY_FAILED, JobStatus.FAILED
        )

        code = main(["--db", str(tmp_path / "oanda.db")])

    assert code == EXIT_JOB_FAILURE
    out = capsys.readouterr().out
    assert "Partially failed: 1" in out
    assert "Failed: 1" in out


def test_aborted_run_reports_credentials(oanda_env, tmp_path, capsys) -> None:
    with patch("candlesync.cli.OandaClient"), patch("candlesync.cli.SyncOrchestrator") as mock_orchestrator:
        mock_orchestrator.return_value.sync.return_value = _summary(
            JobStatus.FAILED, JobStatus.CANCELLED, aborted=True
        )

        code = main(["--db", str(tmp_path / "oanda.db")])

    assert code == EXIT_JOB_FAILURE
    assert "credentials were rejected" in capsys.readouterr().out


def test_unmatched_whitelist_is_config_error(oanda_env, tmp_path) -> None:
    with patch("candlesync.cli.OandaClient"), patch("candlesync.cli.SyncOrchestrator") as mock_orchestrator:
        mock_orchestrator.return_value.sync.side_effect = ConfigError("no instruments match")

        assert main(["--db", str(tmp_path / "oanda.db"), "--tickers", "zzz"]) == EXIT_CONFIG_ERROR


def test_rejected_credentials_while_planning_exit_one(oanda_env, tmp_path) -> None:
    with patch("candlesync.cli.OandaClient"), patch("candlesync.cli.SyncOrchestrator") as mock_orchestrator:
        mock_orchestrator.return_value.sync.side_effect = FetchUnauthorizedError("HTTP 401", status_code=401)

        assert main(["--db", str(tmp_path / "oanda.db")]) == EXIT_JOB_FAILURE


def test_load_credentials_overrides_win_over_environment() -> None:
    env = {"OANDA_ACCOUNT_ID": "env-account", "OANDA_ACCESS_TOKEN": "env-token"}

    creds = load_credentials(account_id="cli-account", environ=env)

    assert creds.account_id == "cli-account"
    assert creds.access_token == "env-token"
    assert "env-token" not in repr(creds)


def test_load_credentials_missing_raises() -> None:
    with pytest.raises(ConfigError, match="OANDA_ACCOUNT_ID"):
        load_credentials(access_token="t", environ={})


def test_resolve_database_url() -> None:
    assert resolve_database_url("data/fx.db", environ={}) == "sqlite:///data/fx.db"
    assert resolve_database_url("postgresql://u@h/db", environ={}) == "postgresql://u@h/db"
    assert resolve_database_url(None, environ={"DATABASE_URL": "postgresql://x/y"}) == "postgresql://x/y"
    assert resolve_database_url(None, environ={}) == "sqlite:///oanda.db"


def test_parse_tickers() -> None:
    assert parse_tickers(None) == ()
    assert parse_tickers(" EUR_USD,,xau_usd , eur_usd") == ("eur_usd", "xau_usd")


def test_parse_dt() -> None:
    assert parse_dt("2015-06-01") == datetime(2015, 6, 1, tzinfo=timezone.utc)
    assert parse_dt("2015-06-01T02:00:00+02:00") == datetime(2015, 6, 1, tzinfo=timezone.utc)
