import pytest

from vasthost import desktop_to_server as d2s
from vasthost.errors import StepError
from vasthost.runner import Runner
from vasthost.steps import StepName, StepStatus
from vasthost.templates import networkd_dhcp

SNAP_LISTING = """\
Name               Version          Rev    Tracking         Publisher   Notes
core20             20230801         2015   latest/stable    canonical✓  base,disabled
core20             20231123         2105   latest/stable    canonical✓  base
firefox            120.0-2          3358   latest/stable/…  mozilla✓    disabled
firefox            121.0-1          3504   latest/stable/…  mozilla✓    -
gtk-common-themes  0.1-81-g442e511  1535   latest/stable/…  canonical✓  -
lxd                5.0.2-838e1b2    24322  5.0/stable/…     canonical✓  -
"""


def test_step_sequence():
    names = [s.name for s in d2s.build_conversion_steps()]
    assert names == [
        StepName.BACKUP,
        StepName.PACKAGE_UPDATE,
        StepName.SERVER_PACKAGES,
        StepName.SSH,
        StepName.REMOVE_DESKTOP,
        StepName.NETWORK,
        StepName.FIREWALL,
        StepName.AUTO_UPDATES,
        StepName.CLEANUP,
        StepName.UTILITIES,
    ]


class TestGrubDefaults:
    def test_replaces_active_and_commented_keys(self):
        text = (
            'GRUB_DEFAULT=0\n'
            'GRUB_CMDLINE_LINUX_DEFAULT="quiet splash"\n'
            '#GRUB_TERMINAL=console\n'
        )
        assert d2s.grub_server_defaults(text) == (
            'GRUB_DEFAULT=0\n'
            'GRUB_CMDLINE_LINUX_DEFAULT=""\n'
            'GRUB_TERMINAL=console\n'
        )

    def test_appends_missing_keys(self):
        assert d2s.grub_server_defaults("GRUB_TIMEOUT=5\n") == (
            "GRUB_TIMEOUT=5\n"
            'GRUB_CMDLINE_LINUX_DEFAULT=""\n'
            "GRUB_TERMINAL=console\n"
        )

    def test_is_stable(self):
        once = d2s.grub_server_defaults('GRUB_CMDLINE_LINUX_DEFAULT="quiet splash"\n')
        assert d2s.grub_server_defaults(once) == once


def test_parse_disabled_snaps():
    assert d2s.parse_disabled_snaps(SNAP_LISTING) == [("core20", "2015"), ("firefox", "3358")]


def test_remove_snaps(ctx, fake_runner, fake_which):
    fake_which.available.add("snap")
    fake_runner.respond("snap", "list", stdout=SNAP_LISTING)

    d2s.remove_snaps(ctx)

    removals = [c for c in fake_runner.commands if c.startswith("snap remove")]
    assert removals == [
        "snap remove core20 --revision=2015",
        "snap remove firefox --revision=3358",
        "snap remove gtk-common-themes",
        "snap remove firefox",
    ]


def test_remove_snaps_without_snapd(ctx, fake_runner):
    d2s.remove_snaps(ctx)
    assert not fake_runner.ran("snap")


def test_remove_desktop(ctx, fake_runner, dpkg_installed):
    fake_runner.respond(
        "systemctl", "list-unit-files", "gdm3.service", stdout="gdm3.service enabled enabled\n"
    )
    dpkg_installed("gdm3", "firefox", "xorg")

    message = d2s.remove_desktop(ctx)

    assert message == "Removed 3 package(s)"
    assert fake_runner.ran("systemctl", "disable", "--now", "gdm3")
    assert not fake_runner.ran("systemctl", "disable", "--now", "lightdm")
    assert fake_runner.ran("apt-get", "remove", "-y", "gdm3", "firefox", "xorg")


def test_configure_ssh_validates_every_run(ctx, fake_runner, paths):
    paths.sshd_config.parent.mkdir(parents=True)
    paths.sshd_config.write_text("PermitRootLogin yes\n")

    d2s.configure_ssh(ctx)
    d2s.configure_ssh(ctx)

    text = paths.sshd_config.read_text()
    assert text.startswith("# BEGIN vasthost server-hardening\nPort 22\n")
    assert "PermitRootLogin no" in text
    assert fake_runner.count("sshd", "-t") == 2
    assert fake_runner.count("systemctl", "restart", "ssh") == 1


class TestNetwork:
    def test_switches_to_networkd(self, ctx, fake_runner, paths):
        paths.grub_defaults.parent.mkdir(parents=True)
        paths.grub_defaults.write_text('GRUB_CMDLINE_LINUX_DEFAULT="quiet splash"\n')
        fake_runner.respond(
            "systemctl", "list-unit-files", "NetworkManager.service",
            stdout="NetworkManager.service enabled enabled\n",
        )

        d2s.switch_network_stack(ctx)

        assert fake_runner.ran("systemctl", "set-default", "multi-user.target")
        assert fake_runner.ran("update-grub")
        assert fake_runner.ran("systemctl", "disable", "NetworkManager")
        assert not fake_runner.ran("systemctl", "stop", "NetworkManager")
        assert fake_runner.ran("systemctl", "enable", "systemd-networkd")
        assert fake_runner.ran("systemctl", "enable", "systemd-resolved")
        assert paths.networkd_dhcp.read_text() == networkd_dhcp().render()
        assert 'GRUB_CMDLINE_LINUX_DEFAULT=""' in paths.grub_defaults.read_text()

    def test_missing_grub_and_network_manager(self, ctx, fake_runner):
        d2s.switch_network_stack(ctx)

        assert not fake_runner.ran("update-grub")
        assert not fake_runner.ran("systemctl", "disable", "NetworkManager")


class TestFirewall:
    def test_refuses_without_ssh(self, ctx, fake_runner):
        fake_runner.respond("systemctl", "is-active", "ssh", returncode=3, stdout="inactive\n")

        with pytest.raises(StepError, match="SSH is not active"):
            d2s.configure_firewall(ctx)
        assert not fake_runner.ran("ufw")

    def test_dry_run_only_warns(self, make_context, fake_runner):
        ctx = make_context(dry_run=True)
        fake_runner.respond("systemctl", "is-active", "ssh", returncode=3, stdout="inactive\n")

        d2s.configure_firewall(ctx)

        assert not fake_runner.ran("ufw")

    def test_rule_order(self, make_context, fake_runner):
        from vasthost.config import HostOptions

        ctx = make_context(options=HostOptions(ssh_port=2222))
        fake_runner.respond("systemctl", "is-active", "ssh", stdout="active\n")

        d2s.configure_firewall(ctx)

        assert [c for c in fake_runner.commands if c.startswith("ufw")] == [
            "ufw --force reset",
            "ufw default deny incoming",
            "ufw default allow outgoing",
            "ufw allow 2222/tcp",
            "ufw --force enable",
        ]

    def test_postcondition(self, ctx, fake_runner):
        fake_runner.respond("ufw", "status", stdout="Status: active\n")
        assert d2s.firewall_active(ctx)


def test_auto_updates(ctx, paths):
    d2s.configure_auto_updates(ctx)

    periodic = (paths.apt_conf_dir / "20auto-upgrades").read_text()
    assert 'APT::Periodic::Unattended-Upgrade "1";' in periodic
    assert (paths.apt_conf_dir / "50unattended-upgrades").is_file()


def test_cleanup(ctx, fake_runner):
    d2s.cleanup(ctx)
    assert fake_runner.commands == [
        "apt-get autoremove -y --purge",
        "apt-get autoclean",
        "apt-get clean",
        "journalctl --vacuum-time=3d",
    ]


def test_utilities(ctx, paths):
    paths.motd_dir.mkdir(parents=True)
    for fragment in d2s.STOCK_MOTD_FRAGMENTS + ["00-header"]:
        (paths.motd_dir / fragment).write_text("#!/bin/sh\n")

    d2s.install_utilities(ctx)

    assert (paths.server_info.stat().st_mode & 0o777) == 0o755
    assert "=== Server Information ===" in paths.server_info.read_text()
    assert (paths.motd_dir / "01-server-info").read_text() == f"#!/bin/bash\n{paths.server_info}\n"
    assert sorted(p.name for p in paths.motd_dir.iterdir()) == ["00-header", "01-server-info"]


def test_full_dry_run_changes_nothing(make_context, fake_runner, paths, backup_dir):
    ctx = make_context(dry_run=True)

    report = Runner(d2s.build_conversion_steps(), ctx, d2s.finalize).execute()

    assert report.ok
    assert all(r.status is StepStatus.DRY_RUN for r in report.results)
    assert list(paths.root_fs.rglob("*")) == []
    assert not backup_dir.exists()
    assert not fake_runner.ran("apt-get")
    assert not fake_runner.ran("ufw")
