"""Tests for configuration parsing and the command-line entry point."""

import argparse
from unittest.mock import patch

import pandas as pd
import pytest

from config import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_STORE_TIMEOUT_SECONDS,
    ServiceConfig,
    add_arguments,
)
from fsm import ConfigurationError
from order_service import build_order_service
from order_service_app import EXIT_ERROR, EXIT_OK, EXIT_REJECTED, build_parser, main
from order_store import InMemoryOrderStore, SqliteOrderStore


class TestServiceConfig:

    def test_defaults(self):
        config = ServiceConfig()
        assert config.database_path is None
        assert config.store_timeout == DEFAULT_STORE_TIMEOUT_SECONDS
        assert config.lock_timeout == DEFAULT_LOCK_TIMEOUT_SECONDS
        assert config.require_payment_confirmation is False

    @pytest.mark.parametrize("field", ["store_timeout", "lock_timeout"])
    def test_non_positive_timeout(self, field):
        with pytest.raises(ConfigurationError):
            ServiceConfig(**{field: 0})

    def test_from_args(self):
        parser = argparse.ArgumentParser()
        add_arguments(parser)
        args = parser.parse_args(['--db', 'x.db', '--store-timeout', '2.5',
                                  '--lock-timeout', '0.5', '--require-confirmation', '-v'])
        config = ServiceConfig.from_args(args)
        assert config.database_path == 'x.db'
        assert config.store_timeout == 2.5
        assert config.lock_timeout == 0.5
        assert config.require_payment_confirmation is True
        assert config.verbose is True

    def test_build_selects_store(self, tmp_path):
        assert isinstance(build_order_service(ServiceConfig()).store, InMemoryOrderStore)
        service = build_order_service(ServiceConfig(database_path=str(tmp_path / "o.db")))
        assert isinstance(service.store, SqliteOrderStore)


class TestCommandLine:

    def test_parser_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_demo(self, capsys):
        assert main(['demo']) == EXIT_OK
        out = capsys.readouterr().out.strip()
        assert out.startswith("1,")
        assert out.endswith(",FULFILLED")

    def test_commands_against_database(self, tmp_path, capsys):
        db = str(tmp_path / "orders.db")
        assert main(['--db', db, 'create']) == EXIT_OK
        assert capsys.readouterr().out.strip().endswith(",SUBMITTED")

        assert main(['--db', db, 'pay', '1', 'conf-1']) == EXIT_OK
        assert capsys.readouterr().out.strip() == "SUBMITTED -> PAID"

        assert main(['--db', db, 'pay', '1', 'conf-2']) == EXIT_REJECTED
        assert capsys.readouterr().out.strip() == "REJECTED,NoMatchingTransition,PAID"

        assert main(['--db', db, 'fulfill', '1']) == EXIT_OK
        capsys.readouterr()

        assert main(['--db', db, 'show', '1']) == EXIT_OK
        assert capsys.readouterr().out.strip().endswith(",FULFILLED")

    def test_cancel_and_list(self, tmp_path, capsys):
        db = str(tmp_path / "orders.db")
        main(['--db', db, 'create'])
        main(['--db', db, 'create'])
        capsys.readouterr()
        assert main(['--db', db, 'cancel', '2']) == EXIT_OK
        capsys.readouterr()
        assert main(['--db', db, 'list']) == EXIT_OK
        lines = capsys.readouterr().out.strip().splitlines()
        assert [line.split(",")[2] for line in lines] == ["SUBMITTED", "CANCELLED"]

    def test_missing_order(self, tmp_path):
        assert main(['--db', str(tmp_path / "orders.db"), 'fulfill', '7']) == EXIT_ERROR

    def test_guard_rejection(self, tmp_path, capsys):
        db = str(tmp_path / "orders.db")
        main(['--db', db, 'create'])
        capsys.readouterr()
        assert main(['--db', db, '--require-confirmation', 'pay', '1', ' ']) == EXIT_REJECTED
        assert "GuardFailed" in capsys.readouterr().out

    def test_bad_timeout(self):
        assert main(['--lock-timeout', '0', 'list']) == EXIT_ERROR

    def test_audit_csv(self, tmp_path):
        path = tmp_path / "audit.csv"
        assert main(['--audit-csv', str(path), 'demo']) == EXIT_OK
        df = pd.read_csv(path)
        assert list(df["new_state"]) == ["SUBMITTED", "PAID", "FULFILLED"]

    def test_memory_database_path(self):
        assert main(['--db', ':memory:', 'list']) == EXIT_ERROR

    def test_action_failure(self, tmp_path, capsys):
        db = str(tmp_path / "orders.db")
        main(['--db', db, 'create'])
        main(['--db', db, 'pay', '1', 'conf-1'])
        with patch('order_fsm.record_payment_processing', side_effect=RuntimeError("gateway down")):
            assert main(['--db', db, 'fulfill', '1']) == EXIT_ERROR
        capsys.readouterr()
        assert main(['--db', db, 'show', '1']) == EXIT_OK
        assert capsys.readouterr().out.strip().endswith(",PAID")
