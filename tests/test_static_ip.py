"""Tests for DHCP to static address conversion."""

import subprocess
from datetime import datetime
from unittest.mock import patch

import pytest

from pve_autoinstall.provisioning import static_ip
from pve_autoinstall.provisioning.static_ip import StaticConfig
from pve_autoinstall.storage.exceptions import ConfirmationDeclined

BRIDGED = """auto lo
iface lo inet loopback

iface eno1 inet manual

auto vmbr0
iface vmbr0 inet dhcp
    bridge-ports eno1
    bridge-stp off
    bridge-fd 0
"""

PLAIN = """auto lo
iface lo inet loopback

auto eth0
iface eth0 inet dhcp
"""


@pytest.fixture
def config():
    return StaticConfig(
        interface="vmbr0", address="192.168.1.50", prefix=24, gateway="192.168.1.1", dns="1.1.1.1"
    )


@pytest.fixture
def etc(tmp_path):
    interfaces = tmp_path / "interfaces"
    interfaces.write_text(BRIDGED)
    resolv = tmp_path / "resolv.conf"
    resolv.write_text("search lan\nnameserver 192.168.1.1\n")
    hosts = tmp_path / "hosts"
    hosts.write_text("127.0.0.1 localhost\n192.168.1.23 pve.local pve\n")
    return interfaces, resolv, hosts


class Answers:
    """Scripted prompt: returns queued answers in order."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.questions = []

    def __call__(self, question):
        self.questions.append(question)
        return self.answers.pop(0)


class TestStaticConfig:
    def test_cidr(self, config):
        assert config.cidr == "192.168.1.50/24"

    @pytest.mark.parametrize(
        "field, value",
        [("address", "192.168.1.300"), ("gateway", "gw"), ("dns", ""), ("prefix", 33), ("prefix", 0)],
    )
    def test_invalid_values(self, field, value):
        values = dict(
            interface="eth0", address="10.0.0.2", prefix=24, gateway="10.0.0.1", dns="10.0.0.1"
        )
        values[field] = value
        with pytest.raises(ValueError):
            StaticConfig(**values)


class TestReadCurrent:
    def test_reads_live_values(self, provisioning_ctx, fake_runner, etc):
        _, resolv, _ = etc
        fake_runner.respond(["ip", "route", "get"], stdout="1.0.0.0 via 192.168.1.1 dev vmbr0 src 192.168.1.23")
        fake_runner.respond(["ip", "route", "show"], stdout="default via 192.168.1.1 dev vmbr0")
        fake_runner.respond(
            ["ip", "-o", "-f", "inet"],
            stdout="4: vmbr0    inet 192.168.1.23/24 brd 192.168.1.255 scope global dynamic vmbr0",
        )
        current = static_ip.read_current(provisioning_ctx, resolv)
        assert current == {
            "interface": "vmbr0",
            "address": "192.168.1.23",
            "prefix": 24,
            "gateway": "192.168.1.1",
            "dns": "192.168.1.1",
        }

    def test_missing_resolv_conf(self, tmp_path):
        assert static_ip.get_nameserver(tmp_path / "absent") is None


class TestPromptStaticConfig:
    CURRENT = {
        "interface": "vmbr0",
        "address": "192.168.1.23",
        "prefix": 24,
        "gateway": "192.168.1.1",
        "dns": "192.168.1.1",
    }

    def test_defaults_accepted(self):
        prompt = Answers("", "", "", "")
        config = static_ip.prompt_static_config(self.CURRENT, prompt=prompt)
        assert config.cidr == "192.168.1.23/24"
        assert prompt.questions[0] == "IP Address [192.168.1.23]: "
        assert prompt.questions[1] == "Netmask (CIDR) [24]: "

    def test_overrides(self):
        prompt = Answers("192.168.1.50", "/16", "", "9.9.9.9")
        config = static_ip.prompt_static_config(self.CURRENT, prompt=prompt)
        assert (config.address, config.prefix, config.dns) == ("192.168.1.50", 16, "9.9.9.9")

    def test_invalid_entry(self):
        with pytest.raises(ValueError):
            static_ip.prompt_static_config(self.CURRENT, prompt=Answers("not-an-ip", "", "", ""))


class TestRenderInterfaces:
    def test_bridge_keeps_port(self, config):
        text = static_ip.render_interfaces(config, BRIDGED)
        assert "iface eno1 inet manual\n" in text
        assert "iface vmbr0 inet static\n    address 192.168.1.50/24\n" in text
        assert "    bridge-ports eno1\n" in text
        assert text.startswith("auto lo\niface lo inet loopback\n\n")

    def test_plain_interface(self):
        config = StaticConfig("eth0", "10.0.0.2", 24, "10.0.0.1", "10.0.0.1")
        text = static_ip.render_interfaces(config, PLAIN)
        assert "auto eth0\niface eth0 inet static\n" in text
        assert "bridge" not in text

    def test_bridge_port_lookup(self):
        assert static_ip.bridge_port(BRIDGED) == "eno1"
        assert static_ip.bridge_port(PLAIN) is None


class TestUpdateHosts:
    def test_rewrites_old_address(self, etc):
        _, _, hosts = etc
        assert static_ip.update_hosts(hosts, "192.168.1.23", "192.168.1.50", "pve.local", "pve")
        assert "192.168.1.50    pve.local pve\n" in hosts.read_text()
        assert "127.0.0.1 localhost" in hosts.read_text()

    def test_no_matching_line(self, etc):
        _, _, hosts = etc
        assert not static_ip.update_hosts(hosts, "10.9.9.9", "10.0.0.2", "pve.local", "pve")


class TestApplyStaticConfig:
    def test_writes_files_and_backup(self, config, etc):
        interfaces, resolv, hosts = etc
        with patch.object(static_ip.socket, "gethostname", return_value="pve"), patch.object(
            static_ip.socket, "getfqdn", return_value="pve.local"
        ):
            backup = static_ip.apply_static_config(
                config,
                "192.168.1.23",
                interfaces=interfaces,
                resolv_conf=resolv,
                hosts=hosts,
                now=datetime(2024, 5, 1, 12, 30, 0),
            )
        assert backup.name == "interfaces.backup.20240501123000"
        assert backup.read_text() == BRIDGED
        assert "inet static" in interfaces.read_text()
        assert resolv.read_text() == "nameserver 1.1.1.1\n"
        assert "192.168.1.50    pve.local pve" in hosts.read_text()


class TestConvertToStatic:
    """Tests for the interactive convert_to_static() flow."""

    def _ctx(self, provisioning_ctx, fake_runner):
        fake_runner.respond(["ip", "route", "get"], stdout="1.0.0.0 via 192.168.1.1 dev vmbr0 src 192.168.1.23")
        fake_runner.respond(["ip", "route", "show"], stdout="default via 192.168.1.1 dev vmbr0")
        fake_runner.respond(["ip", "-o"], stdout="4: vmbr0 inet 192.168.1.23/24 scope global")
        return provisioning_ctx

    def test_declined_changes_nothing(self, provisioning_ctx, fake_runner, etc):
        interfaces, resolv, hosts = etc
        ctx = self._ctx(provisioning_ctx, fake_runner)
        with pytest.raises(ConfirmationDeclined):
            static_ip.convert_to_static(
                ctx,
                prompt=Answers("192.168.1.50", "", "", "", "no"),
                interfaces=interfaces,
                resolv_conf=resolv,
                hosts=hosts,
            )
        assert interfaces.read_text() == BRIDGED
        assert list(interfaces.parent.glob("interfaces.backup.*")) == []

    def test_apply_without_restart(self, provisioning_ctx, fake_runner, etc):
        interfaces, resolv, hosts = etc
        ctx = self._ctx(provisioning_ctx, fake_runner)
        config = static_ip.convert_to_static(
            ctx,
            prompt=Answers("192.168.1.50", "", "", "", "ERASE", "no"),
            interfaces=interfaces,
            resolv_conf=resolv,
            hosts=hosts,
        )
        assert config.address == "192.168.1.50"
        assert "address 192.168.1.50/24" in interfaces.read_text()
        assert not fake_runner.ran("systemctl")

    def test_restart_verifies_address(self, provisioning_ctx, fake_runner, etc, config):
        fake_runner.respond(["ip", "route", "get"], stdout="1.0.0.0 dev vmbr0 src 192.168.1.50")
        assert static_ip.restart_networking(provisioning_ctx, config, etc[0]) is True
        assert fake_runner.ran("systemctl", "restart", "networking")
        provisioning_ctx.sleep.assert_called_once_with(3)

    def test_restart_mismatch(self, provisioning_ctx, fake_runner, etc, config):
        fake_runner.respond(["ip", "route", "get"], stdout="1.0.0.0 dev vmbr0 src 192.168.1.23")
        assert static_ip.restart_networking(provisioning_ctx, config, etc[0]) is False

    def test_restart_failure_points_at_backup(self, provisioning_ctx, fake_runner, etc, config):
        fake_runner.respond(["systemctl", "restart", "networking"], returncode=1)
        hints = []
        with patch.object(static_ip, "log") as log:
            log.info.side_effect = hints.append
            with pytest.raises(subprocess.CalledProcessError):
                static_ip.restart_networking(provisioning_ctx, config, etc[0])
        assert any(f"cp {etc[0]}" in hint for hint in hints)
        provisioning_ctx.sleep.assert_not_called()
