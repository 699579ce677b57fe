"""
Tests for CLI parsing, configuration loading and the run loop.
"""

import logging
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'scripts'))
from fanout import ReconcileError, Scope, ScopeResult, TickResult
from ingress_controller import (
    DEFAULT_INTERVAL, build_parser, load_cidr_file, load_config, main, run_forever,
)
from ingress_tags import ConfigError


def _args(argv, environ=None):
    return build_parser(environ or {}).parse_args(argv)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cidr_file(tmp_path):
    path = tmp_path / "cidr-groups.yaml"
    path.write_text(
        "cidr_groups:\n"
        "  office:\n"
        "    description: Office egress\n"
        "    entries:\n"
        "      - 10.0.2.0/24\n"
        "  partners:\n"
        "    entries: ['192.0.2.0/24']\n"
    )
    return str(path)


# ---------------------------------------------------------------------------
# Parser & Config
# ---------------------------------------------------------------------------

class TestParser:
    def test_defaults(self):
        args = _args(['--cidr', 'office=10.0.0.0/24'])
        assert args.ingress_key == 'ingress.controlant.com'
        assert args.interval == DEFAULT_INTERVAL
        assert args.dry_run is False
        assert args.once is False
        assert args.max_workers is None

    def test_env_fallbacks(self):
        args = _args([], {'INGRESS_KEY': 'ingress.example.com',
                          'RECONCILE_INTERVAL': '60', 'MAX_PARALLEL_SCOPES': '4'})
        assert args.ingress_key == 'ingress.example.com'
        assert args.interval == 60
        assert args.max_workers == 4

    def test_repeated_flags(self):
        args = _args(['-c', 'a=10.0.0.0/24', '-c', 'a=10.0.1.0/24', '-r', 'eu-west-1', '-r', 'us-east-1'])
        assert args.cidr == ['a=10.0.0.0/24', 'a=10.0.1.0/24']
        assert args.region == ['eu-west-1', 'us-east-1']


class TestLoadConfig:
    def test_groups_accumulate(self):
        config = load_config(_args(['-c', 'office=10.0.0.0/24', '-c', 'office=10.0.1.0/24']), {})
        assert config.registry.get('office') == ('10.0.0.0/24', '10.0.1.0/24')
        assert config.auth_mode.mode == 'local'
        assert config.regions == ()

    def test_cidr_required(self):
        with pytest.raises(ConfigError, match='at least one'):
            load_config(_args([]), {})

    def test_invalid_mapping_is_fatal(self):
        with pytest.raises(ConfigError):
            load_config(_args(['-c', 'office:hq=10.0.0.0/24']), {})

    def test_tag_keys(self):
        config = load_config(_args(['-c', 'a=10.0.0.0/24', '-i', 'ingress.example.com']), {})
        assert config.keys.sources == 'ingress.example.com/sources'
        assert config.keys.ports == 'ingress.example.com/ports'

    def test_assume_mode(self):
        config = load_config(_args(['-c', 'a=10.0.0.0/24', '-a', 'arn:1', '-a', 'arn:2']), {})
        assert config.auth_mode.mode == 'assume'
        assert config.auth_mode.roles == ('arn:1', 'arn:2')

    def test_discover_mode(self):
        config = load_config(_args(['-c', 'a=10.0.0.0/24', '--root-role', 'arn:root',
                                    '--sub-role', '/ctrl-cidr']), {})
        assert config.auth_mode.mode == 'discover'
        assert config.auth_mode.root_role == 'arn:root'
        assert config.auth_mode.sub_role == '/ctrl-cidr'

    def test_discover_without_root_role(self):
        config = load_config(_args(['-c', 'a=10.0.0.0/24', '--sub-role', 'ctrl-cidr']), {})
        assert config.auth_mode.mode == 'discover'
        assert config.auth_mode.root_role is None

    def test_assume_conflicts_with_discovery(self):
        with pytest.raises(ConfigError, match='cannot be combined'):
            load_config(_args(['-c', 'a=10.0.0.0/24', '-a', 'arn:1', '--sub-role', 'x']), {})

    def test_root_role_requires_sub_role(self):
        with pytest.raises(ConfigError, match='requires --sub-role'):
            load_config(_args(['-c', 'a=10.0.0.0/24', '--root-role', 'arn:root']), {})

    def test_regions_from_env(self):
        config = load_config(_args(['-c', 'a=10.0.0.0/24']),
                             {'INGRESS_REGIONS': 'eu-west-1, us-east-1'})
        assert config.regions == ('eu-west-1', 'us-east-1')

    def test_deprecate_is_collected(self):
        config = load_config(_args(['-c', 'a=10.0.0.0/24', '-d', '10.9.0.0/16']), {})
        assert config.deprecated_cidrs == ('10.9.0.0/16',)

    def test_deprecate_is_validated(self):
        with pytest.raises(ConfigError):
            load_config(_args(['-c', 'a=10.0.0.0/24', '-d', 'not-a-cidr']), {})

    def test_interval_must_be_positive(self):
        with pytest.raises(ConfigError):
            load_config(_args(['-c', 'a=10.0.0.0/24', '--interval', '0']), {})

    def test_cidr_file_merges_with_flags(self, cidr_file):
        config = load_config(_args(['-c', 'office=10.0.0.0/24', '--cidr-file', cidr_file]), {})
        assert config.registry.get('office') == ('10.0.0.0/24', '10.0.2.0/24')
        assert config.registry.get('partners') == ('192.0.2.0/24',)

    def test_cidr_file_alone_is_enough(self, cidr_file):
        config = load_config(_args(['--cidr-file', cidr_file]), {})
        assert len(config.registry) == 2


class TestLoadCidrFile:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match='Failed to load'):
            load_cidr_file(str(tmp_path / 'nope.yaml'))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text("cidr_groups: [unclosed\n")
        with pytest.raises(ConfigError):
            load_cidr_file(str(path))

    def test_colon_in_name(self, tmp_path):
        path = tmp_path / 'bad.yaml'
        path.write_text("cidr_groups:\n  'a:b':\n    entries: ['10.0.0.0/24']\n")
        with pytest.raises(ConfigError, match='colon'):
            load_cidr_file(str(path))

    def test_plain_list_entries(self, tmp_path):
        path = tmp_path / 'groups.yaml'
        path.write_text("cidr_groups:\n  vpn:\n    - 10.8.0.0/16\n")
        assert load_cidr_file(str(path)) == [('vpn', '10.8.0.0/16')]

    def test_empty_file(self, tmp_path):
        path = tmp_path / 'empty.yaml'
        path.write_text("")
        assert load_cidr_file(str(path)) == []


# ---------------------------------------------------------------------------
# Run Loop
# ---------------------------------------------------------------------------

def _ok_tick():
    return TickResult(scopes=[ScopeResult(scope=Scope(region='eu-west-1'), status='ok')])


def _failed_tick():
    return TickResult(scopes=[
        ScopeResult(scope=Scope(region='eu-west-1'), status='ok'),
        ScopeResult(scope=Scope(region='us-east-1'), status='error', error='boom'),
    ])


class TestRunForever:
    def test_once_runs_a_single_tick(self):
        controller = MagicMock()
        controller.run_tick.return_value = _ok_tick()
        sleep = MagicMock()

        result = run_forever(controller, 300, once=True, sleep=sleep)

        assert result.scopes[0].status == 'ok'
        controller.run_tick.assert_called_once_with(backoff=False)
        sleep.assert_not_called()

    def test_once_with_failed_discovery_raises(self):
        controller = MagicMock()
        controller.run_tick.return_value = TickResult(discovery_error='denied')
        sleep = MagicMock()

        with pytest.raises(ReconcileError, match='account discovery failed'):
            run_forever(controller, 300, once=True, sleep=sleep)

        controller.run_tick.assert_called_once_with(backoff=False)
        sleep.assert_not_called()

    def test_sleeps_between_ticks(self):
        controller = MagicMock()
        controller.run_tick.side_effect = [_ok_tick(), _ok_tick(), _failed_tick()]
        sleep = MagicMock()

        with pytest.raises(ReconcileError, match='local/us-east-1'):
            run_forever(controller, 120, sleep=sleep)

        assert controller.run_tick.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [120, 120]

    def test_discovery_failure_keeps_looping(self):
        controller = MagicMock()
        controller.run_tick.side_effect = [TickResult(discovery_error='denied'), _failed_tick()]
        with pytest.raises(ReconcileError):
            run_forever(controller, 1, sleep=MagicMock())
        assert controller.run_tick.call_count == 2


class TestMain:
    @patch('ingress_controller.IngressController')
    def test_once_success(self, controller_cls):
        controller_cls.return_value.run_tick.return_value = _ok_tick()
        main(['-c', 'office=10.0.0.0/24', '--once', '--dry-run', '-r', 'eu-west-1'])
        config = controller_cls.call_args.args[0]
        assert config.dry_run is True
        assert config.regions == ('eu-west-1',)

    @patch('ingress_controller.IngressController')
    def test_scope_failure_exits_1(self, controller_cls):
        controller_cls.return_value.run_tick.return_value = _failed_tick()
        with pytest.raises(SystemExit) as exc:
            main(['-c', 'office=10.0.0.0/24', '--once'])
        assert exc.value.code == 1

    @patch('ingress_controller.IngressController')
    def test_once_discovery_failure_exits_1(self, controller_cls):
        controller_cls.return_value.run_tick.return_value = TickResult(discovery_error='denied')
        with pytest.raises(SystemExit) as exc:
            main(['-c', 'office=10.0.0.0/24', '--once'])
        assert exc.value.code == 1

    def test_config_error_exits_1(self, caplog):
        with caplog.at_level(logging.ERROR):
            with pytest.raises(SystemExit) as exc:
                main(['-c', 'office=not-a-cidr', '--once'])
        assert exc.value.code == 1
        assert 'Configuration error' in caplog.text
