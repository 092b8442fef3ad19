import yaml
import pytest

from fracta import lima
from fracta.errors import FractaError

from tests.conftest import read_calls


class TestParseStatus:
    def test_running(self):
        out = '{"name": "other", "status": "Stopped"}\n{"name": "fracta-x", "status": "Running"}\n'
        assert lima.parse_status_from_json(out, "fracta-x") == lima.InstanceStatus.RUNNING

    def test_stopped(self):
        out = '{"name": "fracta-x", "status": "Broken"}'
        assert lima.parse_status_from_json(out, "fracta-x") == lima.InstanceStatus.STOPPED

    def test_missing(self):
        assert lima.parse_status_from_json("", "fracta-x") == lima.InstanceStatus.NOT_FOUND

    def test_garbage_lines_skipped(self):
        out = 'time="..." level=warning\n{"name": "fracta-x", "status": "Running"}'
        assert lima.parse_status_from_json(out, "fracta-x") == lima.InstanceStatus.RUNNING

    def test_str(self):
        assert str(lima.InstanceStatus.NOT_FOUND) == "NotFound"


class TestTemplate:
    def test_fields(self):
        text = lima.generate(lima.TemplateConfig(worktree_path="/src/app-x", cpus=2))
        doc = yaml.safe_load(text)
        assert doc["cpus"] == 2
        assert doc["memory"] == "8GiB"
        assert doc["disk"] == "50GiB"
        assert doc["vmType"] == "vz"
        assert doc["mounts"] == [
            {"location": "/src/app-x", "writable": True, "sshfs": {"cache": True, "followSymlinks": True}}
        ]
        assert "get.docker.com" in doc["provision"][0]["script"]
        assert "registry-mirrors" not in text

    def test_script_is_literal_block(self):
        text = lima.generate(lima.TemplateConfig(worktree_path="/x"))
        assert "script: |" in text

    def test_registry_mirror(self):
        text = lima.generate(
            lima.TemplateConfig(worktree_path="/x", registry_mirror="https://mirror.example")
        )
        script = yaml.safe_load(text)["provision"][0]["script"]
        assert '{"registry-mirrors": ["https://mirror.example"]}' in script

    def test_temp_template_removed(self):
        with lima.temp_template(lima.TemplateConfig(worktree_path="/x")) as path:
            assert path.exists()
        assert not path.exists()


class TestShellArgs:
    def test_all_options(self):
        assert lima.shell_args("vm", shell="zsh", workdir="/w", tty=False, command=["ls"]) == [
            "limactl", "shell", "--shell", "zsh", "--workdir", "/w", "--tty", "false", "vm", "ls",
        ]

    def test_minimal(self):
        assert lima.shell_args("vm") == ["limactl", "shell", "vm"]


class TestLimactl:
    def test_lifecycle(self, fake_tools):
        assert lima.info("fracta-x") == lima.InstanceStatus.NOT_FOUND
        with lima.temp_template(lima.TemplateConfig(worktree_path="/x")) as path:
            lima.create(path, "fracta-x")
        assert lima.info("fracta-x") == lima.InstanceStatus.STOPPED
        lima.start("fracta-x")
        assert lima.info("fracta-x") == lima.InstanceStatus.RUNNING
        assert lima.ssh_config_path("fracta-x").exists()
        lima.stop("fracta-x")
        assert lima.info("fracta-x") == lima.InstanceStatus.STOPPED
        lima.delete("fracta-x")
        assert lima.info("fracta-x") == lima.InstanceStatus.NOT_FOUND

    def test_start_missing_fails(self, fake_tools):
        with pytest.raises(FractaError, match="exit 1"):
            lima.start("fracta-ghost")

    def test_shell_command(self, fake_tools):
        code, _, _ = lima.shell("fracta-x", ["echo", "hi"])
        assert code == 0
        call = read_calls(fake_tools["log_file"], "limactl")[-1]
        assert call["args"] == ["shell", "--workdir", "/", "fracta-x", "--", "echo", "hi"]

    def test_is_available(self, fake_tools):
        assert lima.is_available()


class TestTunnels:
    def test_forward_needs_ssh_config(self, fake_tools):
        with pytest.raises(FractaError, match="SSH config not found"):
            lima.start_forward("fracta-x", 3000, 80)

    def test_forward_command(self, fake_tools):
        config = lima.ssh_config_path("fracta-x")
        config.parent.mkdir(parents=True)
        config.write_text("Host lima-fracta-x\n")

        handle = lima.start_forward("fracta-x", 3000, 80)
        try:
            assert handle.is_alive()
            call = read_calls(fake_tools["log_file"], "ssh")[-1]
            assert call["args"] == [
                "-F", str(config), "-N", "-o", "ExitOnForwardFailure=yes",
                "-L", "3000:localhost:80", "lima-fracta-x",
            ]
        finally:
            handle.terminate()

    def test_proxy_command(self, fake_tools):
        config = lima.ssh_config_path("fracta-x")
        config.parent.mkdir(parents=True)
        config.write_text("Host lima-fracta-x\n")

        handle = lima.start_proxy("fracta-x", 1080)
        try:
            call = read_calls(fake_tools["log_file"], "ssh")[-1]
            assert call["args"][-3:] == ["-D", "127.0.0.1:1080", "lima-fracta-x"]
        finally:
            handle.terminate()
