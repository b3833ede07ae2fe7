"""Tests for process bootstrap and the kopf startup and cleanup activities."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import kopf
import pytest
from kubernetes.config import ConfigException

from aws_auth_operator import __main__ as entrypoint
from aws_auth_operator import main as activities
from aws_auth_operator.config import OperatorConfig
from aws_auth_operator.errors import FatalBootstrapError, PermanentCloudError, StoreError


@pytest.fixture
def bootstrap_mocks():
    with patch.object(entrypoint, "load_kube_config"), patch.object(entrypoint, "client"), patch.object(
        entrypoint, "KubernetesBindingStore"
    ) as store_cls, patch.object(entrypoint, "IAMClient") as cloud_cls:
        store_cls.return_value.list.return_value = ([], "1")
        cloud_cls.return_value.verify_credentials.return_value = "arn:aws:sts::111:assumed-role/op/x"
        yield store_cls.return_value, cloud_cls.return_value


@pytest.fixture
def kube_config():
    with patch.object(entrypoint, "config") as kube_config:
        kube_config.ConfigException = ConfigException
        yield kube_config


class TestLoadKubeConfig:
    """Test cases for Kubernetes client configuration."""

    def test_in_cluster(self, kube_config):
        entrypoint.load_kube_config()

        kube_config.load_kube_config.assert_not_called()

    def test_falls_back_to_kube_ctx_context(self, kube_config, monkeypatch):
        monkeypatch.setenv("KUBE_CTX", "staging")
        kube_config.load_incluster_config.side_effect = ConfigException("not in a cluster")

        entrypoint.load_kube_config()

        kube_config.load_kube_config.assert_called_once_with(context="staging")

    def test_falls_back_to_current_context(self, kube_config, monkeypatch):
        monkeypatch.delenv("KUBE_CTX", raising=False)
        kube_config.load_incluster_config.side_effect = ConfigException("not in a cluster")

        entrypoint.load_kube_config()

        kube_config.load_kube_config.assert_called_once_with(context=None)

    def test_no_configuration_is_fatal(self, kube_config):
        kube_config.load_incluster_config.side_effect = ConfigException("not in a cluster")
        kube_config.load_kube_config.side_effect = ConfigException("no kubeconfig")

        with pytest.raises(FatalBootstrapError):
            entrypoint.load_kube_config()


class TestBootstrap:
    """Test cases for the startup checks."""

    def test_succeeds(self, bootstrap_mocks):
        store, cloud = bootstrap_mocks

        entrypoint.bootstrap(OperatorConfig())

        store.list.assert_called_once()
        cloud.verify_credentials.assert_called_once()

    def test_store_unreachable_is_fatal(self, bootstrap_mocks):
        store, _ = bootstrap_mocks
        store.list.side_effect = StoreError("403 Forbidden")

        with pytest.raises(FatalBootstrapError):
            entrypoint.bootstrap(OperatorConfig())

    def test_bad_credentials_are_fatal(self, bootstrap_mocks):
        _, cloud = bootstrap_mocks
        cloud.verify_credentials.side_effect = PermanentCloudError("InvalidClientTokenId")

        with pytest.raises(FatalBootstrapError):
            entrypoint.bootstrap(OperatorConfig())


class TestMain:
    """Test cases for the process entry point."""

    def test_invalid_configuration_exits_non_zero(self, monkeypatch):
        monkeypatch.setenv("RECONCILE_CONCURRENCY", "many")

        with patch.object(entrypoint.kopf, "run") as run:
            assert entrypoint.main() == 1

        run.assert_not_called()

    def test_bootstrap_failure_exits_non_zero(self):
        with patch.object(entrypoint, "bootstrap", side_effect=FatalBootstrapError("no CRD")), patch.object(
            entrypoint.kopf, "run"
        ) as run:
            assert entrypoint.main() == 1

        run.assert_not_called()

    def test_runs_kopf(self):
        with patch.object(entrypoint, "bootstrap"), patch.object(entrypoint.kopf, "run") as run:
            assert entrypoint.main() == 0

        run.assert_called_once_with(clusterwide=True, standalone=True)


class TestActivities:
    """Test cases for the kopf startup and cleanup activities."""

    def test_startup_starts_controller_and_server(self):
        settings = kopf.OperatorSettings()
        memo = kopf.Memo()

        with patch.object(activities, "build_context"), patch.object(activities, "Controller") as controller_cls, patch.object(
            activities.health, "start_http_server"
        ) as start_server, patch.object(activities.structured_logging, "setup_structured_logging"):
            activities.configure(settings=settings, memo=memo)

        controller = controller_cls.return_value
        controller.start.assert_called_once()
        start_server.assert_called_once_with(8080, controller.is_ready)
        assert memo.controller is controller
        assert settings.networking.request_timeout == 30.0
        assert settings.posting.level == 0

    def test_cleanup_stops_everything(self):
        memo = kopf.Memo()
        memo.controller = MagicMock()
        memo.http_server = MagicMock()

        activities.shutdown(memo=memo)

        memo.controller.stop.assert_called_once_with(timeout=activities.SHUTDOWN_TIMEOUT_SECONDS)
        memo.http_server.shutdown.assert_called_once()

    def test_cleanup_without_startup(self):
        activities.shutdown(memo=kopf.Memo())
