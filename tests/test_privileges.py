"""
Tests for privilege analysis.
"""

import pytest

from statekeeper.privileges import PrivilegeAnalyzer
from statekeeper.templates.loader import InMemoryTemplateSource, TemplateLoader


def _load(resources):
    source = InMemoryTemplateSource({"t": {"metadata": {"name": "t"}, "resources": resources}})
    return TemplateLoader(source).load("t")


@pytest.fixture
def analyzer():
    return PrivilegeAnalyzer()


class TestPrivilegeAnalyzer:
    """Test cases for PrivilegeAnalyzer."""

    def test_user_scope_template(self, analyzer):
        template = _load(
            {
                "registry": [{"path": "HKCU:\\Software\\Foo"}],
                "file": [{"path": "/home/alice/.bashrc"}],
                "scheduled_task": [{"path": "\\StateKeeper\\Nightly"}],
            }
        )

        requirement = analyzer.analyze(template)

        assert requirement.requires_admin is False
        assert requirement.access_classes == frozenset()

    def test_machine_hive_requires_admin(self, analyzer):
        template = _load({"registry": [{"path": "HKEY_LOCAL_MACHINE\\SOFTWARE\\OpenSSH"}]})

        requirement = analyzer.analyze(template)

        assert requirement.requires_admin is True
        assert requirement.access_classes == frozenset({"HKLM"})

    def test_protected_file_roots(self, analyzer):
        template = _load(
            {"file": [{"path": "c:\\windows\\System32\\drivers\\etc\\hosts"}, {"path": "/etc/ssh/sshd_config"}]}
        )

        requirement = analyzer.analyze(template)

        assert requirement.access_classes == frozenset({"C:\\Windows", "/etc"})
        assert len(requirement.reasons) == 2

    def test_system_task_folder(self, analyzer):
        template = _load({"scheduled_task": [{"path": "\\Microsoft\\Windows\\Defrag\\ScheduledDefrag"}]})

        assert analyzer.analyze(template).access_classes == frozenset({"TaskScheduler"})

    def test_union_across_kinds(self, analyzer):
        template = _load(
            {
                "registry": [{"path": "HKLM:\\SYSTEM\\Setup"}, {"path": "HKU:\\.DEFAULT\\Control Panel"}],
                "file": [{"path": "/usr/local/bin/tool"}],
            }
        )

        requirement = analyzer.analyze(template)

        assert requirement.access_classes == frozenset({"HKLM", "HKU", "/usr"})
        assert requirement.to_dict()["access_classes"] == ["/usr", "HKLM", "HKU"]

    def test_custom_protected_roots(self):
        analyzer = PrivilegeAnalyzer(protected_roots=["/srv/data"])
        template = _load({"file": [{"path": "/srv/data/db.sqlite"}, {"path": "/etc/hosts"}]})

        assert analyzer.analyze(template).access_classes == frozenset({"/srv/data"})

    def test_analysis_is_repeatable(self, analyzer):
        template = _load({"registry": [{"path": "HKLM:\\SOFTWARE\\X"}]})
        assert analyzer.analyze(template) == analyzer.analyze(template)
