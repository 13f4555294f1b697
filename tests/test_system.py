"""Tests for the local system collaborators."""
import os
import sys

import httpx
import pytest
from mcp_system_state.config.settings import EngineSettings
from mcp_system_state.engine import CommandError, ExecutionError, ProbeError
from mcp_system_state.system import (
    AptPackageManager,
    CommandRunner,
    EnvironmentFile,
    KernelModuleManager,
    LocalFileSystem,
    PipPackageManager,
    create_system,
)
from mcp_system_state.system.apt import parse_dpkg_status
from mcp_system_state.system.environment import format_line, parse_line
from mcp_system_state.system.kmod import MANAGED_HEADER, blacklisted_module, normalize_module_name
from mcp_system_state.system.pip import parse_pip_show


class TestCommandRunner:
    """Tests for CommandRunner against real processes."""

    def test_captures_output(self):
        result = CommandRunner().run([sys.executable, "-c", "print('hello')"])
        assert result.ok
        assert result.stdout.strip() == "hello"

    def test_nonzero_exit_raises(self):
        with pytest.raises(CommandError) as exc_info:
            CommandRunner().run(
                [sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"]
            )
        assert exc_info.value.returncode == 3
        assert "bad" in str(exc_info.value)

    def test_nonzero_exit_unchecked(self):
        result = CommandRunner().run([sys.executable, "-c", "raise SystemExit(2)"], check=False)
        assert result.returncode == 2
        assert not result.ok

    def test_missing_binary_is_127(self):
        result = CommandRunner().run(["statecraft-no-such-binary"], check=False)
        assert result.returncode == 127

    def test_timeout_is_124(self):
        runner = CommandRunner(timeout=0.2)
        result = runner.run([sys.executable, "-c", "import time; time.sleep(5)"], check=False)
        assert result.returncode == 124

    def test_env_is_merged(self):
        runner = CommandRunner(env={"STATECRAFT_TEST_VALUE": "42"})
        result = runner.run(
            [sys.executable, "-c", "import os; print(os.environ['STATECRAFT_TEST_VALUE'])"]
        )
        assert result.stdout.strip() == "42"


class TestAptPackageManager:
    """Tests for AptPackageManager command sequences."""

    def test_installed_version(self, fake_runner):
        fake_runner.responses["dpkg-query"] = (0, "install ok installed\t3.0.23", "")
        assert AptPackageManager(fake_runner).installed_version("clinfo") == "3.0.23"
        assert fake_runner.commands == [["dpkg-query", "-W", "-f=${Status}\t${Version}", "clinfo"]]

    def test_not_installed(self, fake_runner):
        fake_runner.responses["dpkg-query"] = (
            1, "", "dpkg-query: no packages found matching clinfo"
        )
        assert AptPackageManager(fake_runner).installed_version("clinfo") is None

    def test_query_failure_is_probe_error(self, fake_runner):
        fake_runner.responses["dpkg-query"] = (2, "", "database is locked")
        with pytest.raises(ProbeError, match="database is locked"):
            AptPackageManager(fake_runner).installed_version("clinfo")

    def test_install_pinned_updates_index_once(self, fake_runner):
        apt = AptPackageManager(fake_runner)

        apt.install("clinfo", "3.0.23")
        apt.install("cmake")

        assert fake_runner.commands == [
            ["apt-get", "update"],
            ["apt-get", "install", "-y", "clinfo=3.0.23"],
            ["apt-get", "install", "-y", "cmake"],
        ]

    def test_install_without_index_update(self, fake_runner):
        AptPackageManager(fake_runner, update_index=False).install("cmake")
        assert fake_runner.commands == [["apt-get", "install", "-y", "cmake"]]

    def test_failed_index_update_retries_fix_missing(self, fake_runner):
        fake_runner.responses[("apt-get", "update")] = (100, "", "Temporary failure resolving")
        AptPackageManager(fake_runner).install("cmake")
        assert fake_runner.commands[:2] == [
            ["apt-get", "update"],
            ["apt-get", "update", "--fix-missing"],
        ]

    def test_install_failure(self, fake_runner):
        fake_runner.responses["apt-get"] = (100, "", "E: Version '9.9' for 'cmake' was not found")
        with pytest.raises(CommandError, match="was not found"):
            AptPackageManager(fake_runner, update_index=False).install("cmake", "9.9")

    def test_install_local_deb(self, fake_runner):
        AptPackageManager(fake_runner).install("libmali", "1.9-1", "/tmp/libmali.deb")
        assert fake_runner.commands == [["dpkg", "-i", "/tmp/libmali.deb"]]

    def test_local_deb_dependency_repair(self, fake_runner):
        """dpkg -i failures are repaired with apt-get install -f."""
        fake_runner.responses["dpkg"] = (1, "", "dependency problems")
        fake_runner.responses["dpkg-query"] = (0, "install ok installed\t1.9-1", "")

        AptPackageManager(fake_runner).install("libmali", source="/tmp/libmali.deb")

        assert fake_runner.commands == [
            ["dpkg", "-i", "/tmp/libmali.deb"],
            ["apt-get", "update"],
            ["apt-get", "install", "-f", "-y"],
            ["dpkg-query", "-W", "-f=${Status}\t${Version}", "libmali"],
        ]

    def test_local_deb_repair_fails(self, fake_runner):
        fake_runner.responses["dpkg"] = (1, "", "dependency problems")
        fake_runner.responses["dpkg-query"] = (1, "", "no packages found matching libmali")

        with pytest.raises(ExecutionError, match="still not installed"):
            AptPackageManager(fake_runner).install("libmali", source="/tmp/libmali.deb")

    def test_remote_deb_is_downloaded(self, fake_runner, fake_system):
        url = "https://mirror.local/libmali.deb"
        fake_system.files.sources[url] = b"!<arch>\n"
        apt = AptPackageManager(fake_runner, files=fake_system.files)

        apt.install("libmali", source=url)

        assert fake_system.files.fetches == [url]
        argv = fake_runner.commands[0]
        assert argv[:2] == ["dpkg", "-i"]
        assert argv[2].endswith(".deb")
        assert not os.path.exists(argv[2])  # Temp file cleaned up

    def test_remote_deb_without_files(self, fake_runner):
        with pytest.raises(ExecutionError, match="Cannot download"):
            AptPackageManager(fake_runner).install("libmali", source="https://mirror.local/x.deb")

    def test_remove(self, fake_runner):
        AptPackageManager(fake_runner).remove("firefox")
        assert fake_runner.commands == [["apt-get", "remove", "--purge", "-y", "firefox"]]

    @pytest.mark.parametrize("output,expected", [
        ("install ok installed\t1.9-1", "1.9-1"),
        ("install ok installed\t1:2.3-4ubuntu1\n", "1:2.3-4ubuntu1"),
        ("deinstall ok config-files\t1.9-1", None),
        ("", None),
    ])
    def test_parse_dpkg_status(self, output, expected):
        assert parse_dpkg_status(output) == expected


class TestPipPackageManager:
    """Tests for PipPackageManager."""

    PYTHON = "/home/radxa/radxa_venv/bin/python"

    def test_installed_version(self, fake_runner):
        fake_runner.responses[self.PYTHON] = (0, "Name: numpy\nVersion: 1.26.4\nSummary: x\n", "")
        pip = PipPackageManager(self.PYTHON, fake_runner)

        assert pip.installed_version("numpy") == "1.26.4"
        assert fake_runner.commands == [[self.PYTHON, "-m", "pip", "show", "numpy"]]

    def test_not_installed(self, fake_runner):
        fake_runner.responses[self.PYTHON] = (1, "", "WARNING: Package(s) not found: numpy")
        assert PipPackageManager(self.PYTHON, fake_runner).installed_version("numpy") is None

    def test_missing_interpreter(self, fake_runner):
        fake_runner.responses[self.PYTHON] = (127, "", "No such file or directory")
        with pytest.raises(ProbeError, match="interpreter not found"):
            PipPackageManager(self.PYTHON, fake_runner).installed_version("numpy")

    @pytest.mark.parametrize("version,source,spec", [
        ("1.26.4", None, "numpy==1.26.4"),
        (None, None, "numpy"),
        ("1.26.4", "/opt/wheels/numpy-1.26.4-cp311-linux_aarch64.whl",
         "/opt/wheels/numpy-1.26.4-cp311-linux_aarch64.whl"),
    ])
    def test_install_spec(self, fake_runner, version, source, spec):
        PipPackageManager(self.PYTHON, fake_runner).install("numpy", version, source)
        assert fake_runner.commands == [[self.PYTHON, "-m", "pip", "install", spec]]

    def test_remove(self, fake_runner):
        PipPackageManager(self.PYTHON, fake_runner).remove("numpy")
        assert fake_runner.commands == [[self.PYTHON, "-m", "pip", "uninstall", "-y", "numpy"]]

    def test_defaults_to_running_interpreter(self):
        assert PipPackageManager().python == sys.executable

    def test_parse_pip_show(self):
        assert parse_pip_show("Name: torch\nversion: 2.2.0\n") == "2.2.0"
        assert parse_pip_show("Name: torch\n") is None


class TestKernelModuleManager:
    """Tests for KernelModuleManager with a temporary modprobe.d."""

    @pytest.fixture
    def kmod(self, tmp_path, fake_runner):
        proc = tmp_path / "modules"
        proc.write_text(
            "mali_kbase 1036288 0 - Live 0x0000000000000000\n"
            "bifrost_kbase 4096 1 mali_kbase, Live 0x0000000000000000\n"
        )
        return KernelModuleManager(fake_runner, str(tmp_path / "modprobe.d"), str(proc))

    def test_loaded_modules(self, kmod):
        assert kmod.loaded_modules() == {"mali_kbase", "bifrost_kbase"}

    def test_unreadable_proc_modules(self, tmp_path, fake_runner):
        kmod = KernelModuleManager(fake_runner, str(tmp_path), str(tmp_path / "missing"))
        with pytest.raises(ProbeError):
            kmod.loaded_modules()

    def test_load_and_unload(self, kmod, fake_runner):
        kmod.load("mali")
        kmod.unload("panfrost")
        assert fake_runner.commands == [["modprobe", "mali"], ["modprobe", "-r", "panfrost"]]

    def test_blacklist_writes_conf(self, kmod, tmp_path):
        assert not kmod.is_blacklisted("panfrost")

        kmod.set_blacklisted("panfrost", True)

        conf = tmp_path / "modprobe.d" / "panfrost.conf"
        assert conf.read_text() == f"{MANAGED_HEADER}blacklist panfrost\n"
        assert kmod.is_blacklisted("panfrost")

    def test_blacklist_found_in_any_conf(self, kmod, tmp_path):
        conf_dir = tmp_path / "modprobe.d"
        conf_dir.mkdir()
        (conf_dir / "blacklist.conf").write_text("# local\nblacklist nouveau\nblacklist bifrost-kbase\n")
        assert kmod.is_blacklisted("bifrost_kbase")
        assert not kmod.is_blacklisted("panfrost")

    def test_unblacklist_removes_only_that_module(self, kmod, tmp_path):
        conf_dir = tmp_path / "modprobe.d"
        conf_dir.mkdir()
        conf = conf_dir / "blacklist.conf"
        conf.write_text("blacklist nouveau\nblacklist panfrost\n")

        kmod.set_blacklisted("panfrost", False)

        assert conf.read_text() == "blacklist nouveau\n"
        assert not kmod.is_blacklisted("panfrost")

    def test_blacklist_keeps_existing_lines(self, kmod, tmp_path):
        """Options already in <module>.conf survive blacklisting."""
        conf_dir = tmp_path / "modprobe.d"
        conf_dir.mkdir()
        conf = conf_dir / "panfrost.conf"
        conf.write_text("options panfrost debug=1")

        kmod.set_blacklisted("panfrost", True)

        assert conf.read_text() == "options panfrost debug=1\nblacklist panfrost\n"
        assert kmod.is_blacklisted("panfrost")

    def test_blacklist_already_present_is_untouched(self, kmod, tmp_path):
        conf_dir = tmp_path / "modprobe.d"
        conf_dir.mkdir()
        (conf_dir / "local.conf").write_text("blacklist panfrost\n")

        kmod.set_blacklisted("panfrost", True)

        assert not (conf_dir / "panfrost.conf").exists()

    def test_blacklist_with_trailing_comment(self, kmod, tmp_path):
        conf_dir = tmp_path / "modprobe.d"
        conf_dir.mkdir()
        conf = conf_dir / "gpu.conf"
        conf.write_text("blacklist panfrost  # use the vendor mali driver\nblacklist nouveau\n")

        assert kmod.is_blacklisted("panfrost")

        kmod.set_blacklisted("panfrost", False)

        assert conf.read_text() == "blacklist nouveau\n"

    def test_helpers(self):
        assert normalize_module_name(" bifrost-kbase ") == "bifrost_kbase"
        assert blacklisted_module("blacklist  panfrost ") == "panfrost"
        assert blacklisted_module("# blacklist panfrost") is None
        assert blacklisted_module("options mali foo=1") is None
        assert blacklisted_module("blacklist panfrost # vendor driver") == "panfrost"


class TestEnvironmentFile:
    """Tests for EnvironmentFile."""

    def test_missing_file(self, tmp_path):
        env = EnvironmentFile(str(tmp_path / "environment"))
        assert env.get("LIBGL_KOPPER_DISABLE") is None

    def test_set_appends(self, tmp_path):
        path = tmp_path / "environment"
        path.write_text('PATH="/usr/local/bin:/usr/bin"')
        env = EnvironmentFile(str(path))

        env.set("LIBGL_KOPPER_DISABLE", "true")

        assert path.read_text() == 'PATH="/usr/local/bin:/usr/bin"\nLIBGL_KOPPER_DISABLE=true\n'
        assert env.get("LIBGL_KOPPER_DISABLE") == "true"
        assert env.get("PATH") == "/usr/local/bin:/usr/bin"

    def test_set_replaces_and_drops_duplicates(self, tmp_path):
        path = tmp_path / "environment"
        path.write_text("A=1\nLIBGL_KOPPER_DISABLE=false\nB=2\nLIBGL_KOPPER_DISABLE=maybe\n")

        EnvironmentFile(str(path)).set("LIBGL_KOPPER_DISABLE", "true")

        assert path.read_text() == "A=1\nLIBGL_KOPPER_DISABLE=true\nB=2\n"

    def test_last_assignment_wins(self, tmp_path):
        path = tmp_path / "environment"
        path.write_text("X=1\nexport X='2'\n")
        assert EnvironmentFile(str(path)).get("X") == "2"

    def test_unset(self, tmp_path):
        path = tmp_path / "environment"
        path.write_text("# comment\nOPENCV_OPENCL_DEVICE=enabled\nA=1\n")

        EnvironmentFile(str(path)).unset("OPENCV_OPENCL_DEVICE")

        assert path.read_text() == "# comment\nA=1\n"

    def test_unset_missing_leaves_file(self, tmp_path):
        path = tmp_path / "environment"
        EnvironmentFile(str(path)).unset("X")
        assert not path.exists()

    def test_parse_and_format(self):
        assert parse_line('export OPENCV_OPENCL_DEVICE="enabled"') == (
            "OPENCV_OPENCL_DEVICE", "enabled"
        )
        assert parse_line("# X=1") is None
        assert parse_line("") is None
        assert format_line("X", "a b") == 'X="a b"\n'
        assert format_line("X", "ab") == "X=ab\n"


class TestLocalFileSystem:
    """Tests for LocalFileSystem."""

    def test_write_read_stat(self, tmp_path):
        fs = LocalFileSystem()
        path = str(tmp_path / "vendors" / "mali.icd")

        fs.write_bytes(path, b"libmali.so\n", 0o600)

        assert fs.read_bytes(path) == b"libmali.so\n"
        stat = fs.stat(path)
        assert stat.size == len(b"libmali.so\n")
        assert stat.mode == 0o600
        assert os.listdir(tmp_path / "vendors") == ["mali.icd"]  # No temp leftovers

    def test_write_keeps_existing_mode(self, tmp_path):
        fs = LocalFileSystem()
        path = str(tmp_path / "x")
        fs.write_bytes(path, b"1", 0o640)
        fs.write_bytes(path, b"2")
        assert fs.stat(path).mode == 0o640

    def test_stat_missing(self, tmp_path):
        assert LocalFileSystem().stat(str(tmp_path / "missing")) is None

    def test_chmod_and_remove(self, tmp_path):
        fs = LocalFileSystem()
        path = str(tmp_path / "x")
        fs.write_bytes(path, b"x")
        fs.chmod(path, 0o600)
        assert fs.stat(path).mode == 0o600
        fs.remove(path)
        fs.remove(path)  # Already gone
        assert fs.stat(path) is None

    def test_fetch_local_and_file_url(self, tmp_path):
        artifact = tmp_path / "mali_csffw.bin"
        artifact.write_bytes(b"\x00fw")
        fs = LocalFileSystem()
        assert fs.fetch(str(artifact)) == b"\x00fw"
        assert fs.fetch(f"file://{artifact}") == b"\x00fw"

    def test_fetch_missing_local(self, tmp_path):
        with pytest.raises(ExecutionError, match="Cannot read artifact"):
            LocalFileSystem().fetch(str(tmp_path / "missing.bin"))

    def test_fetch_http(self, monkeypatch):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/mali_csffw.bin"
            return httpx.Response(200, content=b"firmware")

        real_client = httpx.Client
        monkeypatch.setattr(
            httpx, "Client",
            lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
        )

        assert LocalFileSystem().fetch("https://mirror.local/mali_csffw.bin") == b"firmware"

    def test_fetch_http_404(self, monkeypatch):
        real_client = httpx.Client
        monkeypatch.setattr(
            httpx, "Client",
            lambda **kwargs: real_client(
                transport=httpx.MockTransport(lambda request: httpx.Response(404)), **kwargs
            ),
        )

        with pytest.raises(ExecutionError, match="Download failed"):
            LocalFileSystem().fetch("https://mirror.local/missing.bin")


class TestCreateSystem:
    """Tests for the collaborator factory."""

    def test_uses_settings(self, tmp_path):
        settings = EngineSettings.from_sources(
            {
                "python": "/opt/venv/bin/python",
                "environment_file": str(tmp_path / "environment"),
                "modprobe_dir": str(tmp_path / "modprobe.d"),
                "apt_update": False,
            },
            env={},
        )

        system = create_system(settings)

        assert system.python_packages.python == "/opt/venv/bin/python"
        assert str(system.environment.path) == str(tmp_path / "environment")
        assert str(system.modules.modprobe_dir) == str(tmp_path / "modprobe.d")
        assert system.packages.update_index is False
        assert system.packages.files is system.files

    def test_check_commands_use_check_timeout(self, fake_runner):
        settings = EngineSettings.from_sources({"check_timeout": 5}, env={})
        system = create_system(settings)
        system.commands = fake_runner

        system.check_output(["clinfo", "--list"])
        system.run_command(["ldconfig"])

        assert system.check_timeout == 5.0
        assert fake_runner.timeouts == [5.0, None]
