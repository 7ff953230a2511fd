"""Unit tests for cli.py - the bqtable-operator command line."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

import cli
from config import Config
from conftest import FINALIZER, make_object
from errors import StoreError
from main import StartupError
from models import Declaration, ReconcileAction, ReconcileResult, ResourceKey


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cfg():
    cfg = Config.default()
    with patch("cli.get_config", return_value=cfg):
        yield cfg


@pytest.fixture
def fake_store():
    store = MagicMock()
    store.list = AsyncMock(return_value=([], "1"))
    with patch("cli.load_kubernetes_client", return_value=MagicMock()), patch(
        "cli.build_store", return_value=store
    ) as build_store:
        store.build_store = build_store
        yield store


class TestManifest:
    def test_yaml(self, runner, cfg):
        result = runner.invoke(cli.cli, ["manifest"])

        assert result.exit_code == 0
        crd = yaml.safe_load(result.output)
        assert crd["kind"] == "CustomResourceDefinition"
        assert crd["metadata"]["name"] == "bigquerytables.mahdi.dev"

    def test_json_uses_configured_group(self, runner, cfg):
        cfg.kubernetes.crd_group = "example.com"

        result = runner.invoke(cli.cli, ["manifest", "-o", "json"])

        assert result.exit_code == 0
        crd = json.loads(result.output)
        assert crd["spec"]["group"] == "example.com"

    def test_invalid_configuration(self, runner):
        with patch("cli.get_config", side_effect=ValueError("WATCH_TIMEOUT bad")):
            result = runner.invoke(cli.cli, ["manifest"])

        assert result.exit_code == 1
        assert "invalid configuration" in result.output


class TestGet:
    def test_empty(self, runner, cfg, fake_store):
        result = runner.invoke(cli.cli, ["get"])

        assert result.exit_code == 0
        assert "No resources found" in result.output

    def test_table(self, runner, cfg, fake_store):
        ready = make_object(
            name="orders",
            finalizers=[FINALIZER],
            status={
                "tableId": "p.sales.orders",
                "conditions": [{"type": "Ready", "status": "True"}],
            },
        )
        deleting = make_object(name="old", finalizers=[FINALIZER], deleting=True)
        fake_store.list.return_value = (
            [Declaration.from_object(ready), Declaration.from_object(deleting)],
            "7",
        )

        result = runner.invoke(cli.cli, ["get"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].split() == [
            "NAMESPACE",
            "NAME",
            "TABLE",
            "READY",
            "FINALIZER",
            "DELETING",
        ]
        assert "p.sales.orders" in result.output
        assert "Unknown" in result.output

    def test_namespace_option(self, runner, cfg, fake_store):
        runner.invoke(cli.cli, ["get", "-n", "analytics"])

        passed_cfg = fake_store.build_store.call_args[0][0]
        assert passed_cfg.kubernetes.namespace == "analytics"

    def test_store_error(self, runner, cfg, fake_store):
        fake_store.list.side_effect = StoreError("list failed: 403 Forbidden")

        result = runner.invoke(cli.cli, ["get"])

        assert result.exit_code == 1
        assert "403 Forbidden" in result.output

    def test_startup_error(self, runner, cfg):
        with patch(
            "cli.load_kubernetes_client", side_effect=StartupError("no kubeconfig")
        ):
            result = runner.invoke(cli.cli, ["get"])

        assert result.exit_code == 1
        assert "no kubeconfig" in result.output


class TestReconcile:
    @pytest.fixture
    def reconciler(self, fake_store):
        reconciler = MagicMock()
        reconciler.reconcile = AsyncMock()
        with patch("cli.build_reconciler", return_value=reconciler), patch(
            "cli.BigQueryTableBackend"
        ) as backend_cls, patch("cli.setup_logging"):
            reconciler.backend = backend_cls.return_value
            yield reconciler

    def test_prints_action(self, runner, cfg, reconciler):
        reconciler.reconcile.return_value = ReconcileResult(
            ReconcileAction.CREATED, message="Table p.sales.orders created"
        )

        result = runner.invoke(cli.cli, ["reconcile", "default", "orders"])

        assert result.exit_code == 0
        assert "default/orders: created" in result.output
        assert "Table p.sales.orders created" in result.output
        reconciler.reconcile.assert_awaited_once_with(
            ResourceKey("default", "orders")
        )
        reconciler.backend.close.assert_called_once()

    def test_failure_exits_nonzero(self, runner, cfg, reconciler):
        reconciler.reconcile.side_effect = StoreError("apiserver down")

        result = runner.invoke(cli.cli, ["reconcile", "default", "orders"])

        assert result.exit_code == 1
        assert "apiserver down" in result.output
        reconciler.backend.close.assert_called_once()


class TestRun:
    def test_startup_error_exits_nonzero(self, runner, cfg):
        with patch("cli.setup_logging"), patch(
            "cli.main", AsyncMock(side_effect=StartupError("cannot list"))
        ):
            result = runner.invoke(cli.cli, ["run"])

        assert result.exit_code == 1
        assert "cannot list" in result.output

    def test_runs_main_with_config(self, runner, cfg):
        with patch("cli.setup_logging") as setup_logging, patch(
            "cli.main", AsyncMock()
        ) as main:
            result = runner.invoke(cli.cli, ["run"])

        assert result.exit_code == 0
        main.assert_awaited_once_with(cfg)
        setup_logging.assert_called_once_with("INFO")
