"""Tests for the state prober."""
import pytest
from mcp_system_state.engine import Ensure, Resource, ResourceKind, StateProber
from mcp_system_state.engine.schema import OutputExpectation, content_digest


class TestVersionedProbe:
    """Packages and pip distributions."""

    def test_installed_matching_version(self, fake_system):
        fake_system.packages.installed["clinfo"] = "3.0.23"
        resource = Resource(id="clinfo", kind=ResourceKind.PACKAGE_INSTALLED,
                            target="clinfo", desired="3.0.23")

        result = StateProber(fake_system).probe(resource)

        assert result.present
        assert result.observed_value == "3.0.23"
        assert result.matches_desired
        assert result.probe_error is None

    def test_version_mismatch(self, fake_system):
        fake_system.python_packages.installed["numpy"] = "2.0.0"
        resource = Resource(id="pip-numpy", kind=ResourceKind.PIP_PACKAGE_VERSION,
                            target="numpy", desired="1.26.4")

        result = StateProber(fake_system).probe(resource)

        assert result.present
        assert result.observed_value == "2.0.0"
        assert not result.matches_desired

    def test_unpinned_any_version_matches(self, fake_system):
        fake_system.packages.installed["cmake"] = "3.25.1"
        resource = Resource(id="cmake", kind=ResourceKind.PACKAGE_INSTALLED, target="cmake")
        assert StateProber(fake_system).probe(resource).matches_desired

    def test_not_installed(self, fake_system):
        resource = Resource(id="cmake", kind=ResourceKind.PACKAGE_INSTALLED, target="cmake")
        result = StateProber(fake_system).probe(resource)
        assert not result.present
        assert not result.matches_desired

    def test_absent_package(self, fake_system):
        resource = Resource(id="browser-firefox", kind=ResourceKind.PACKAGE_INSTALLED,
                            target="firefox", ensure=Ensure.ABSENT)
        prober = StateProber(fake_system)

        assert prober.probe(resource).matches_desired
        fake_system.packages.installed["firefox"] = "115.0"
        assert not prober.probe(resource).matches_desired

    def test_probe_error_is_captured(self, fake_system):
        """Query failures never escape the prober."""
        fake_system.packages.broken_query.add("clinfo")
        resource = Resource(id="clinfo", kind=ResourceKind.PACKAGE_INSTALLED, target="clinfo")

        result = StateProber(fake_system).probe(resource)

        assert not result.matches_desired
        assert "database locked" in result.probe_error

    def test_unexpected_exception_is_captured(self, fake_system):
        def explode(name):
            raise RuntimeError("boom")
        fake_system.packages.installed_version = explode
        resource = Resource(id="clinfo", kind=ResourceKind.PACKAGE_INSTALLED, target="clinfo")

        result = StateProber(fake_system).probe(resource)

        assert result.probe_error == "RuntimeError: boom"


class TestFileProbe:
    """file_content resources."""

    def test_matching_content(self, fake_system):
        fake_system.files.files["/etc/OpenCL/vendors/mali.icd"] = (b"libmali.so\n", 0o644)
        resource = Resource(id="icd", kind=ResourceKind.FILE_CONTENT,
                            target="/etc/OpenCL/vendors/mali.icd", desired="libmali.so\n")

        result = StateProber(fake_system).probe(resource)

        assert result.matches_desired
        assert result.observed_value == content_digest(b"libmali.so\n")

    def test_digest_desired(self, fake_system):
        data = b"\x00firmware\x01"
        fake_system.files.files["/lib/firmware/mali_csffw.bin"] = (data, 0o644)
        resource = Resource(id="fw", kind=ResourceKind.FILE_CONTENT,
                            target="/lib/firmware/mali_csffw.bin",
                            desired=content_digest(data).upper().replace("SHA256:", "sha256:"))

        assert StateProber(fake_system).probe(resource).matches_desired

    def test_content_differs(self, fake_system):
        fake_system.files.files["/etc/x"] = (b"old", 0o644)
        resource = Resource(id="x", kind=ResourceKind.FILE_CONTENT, target="/etc/x",
                            desired="new")

        result = StateProber(fake_system).probe(resource)

        assert not result.matches_desired
        assert result.present
        assert result.detail == "content differs"

    def test_mode_differs(self, fake_system):
        fake_system.files.files["/etc/x"] = (b"same", 0o600)
        resource = Resource(id="x", kind=ResourceKind.FILE_CONTENT, target="/etc/x",
                            desired="same", mode=0o644)

        result = StateProber(fake_system).probe(resource)

        assert not result.matches_desired
        assert result.detail == "mode 0600 != 0644"

    def test_source_only_file_exists(self, fake_system):
        """Without declared content any existing file matches."""
        fake_system.files.files["/lib/firmware/fw.bin"] = (b"anything", 0o644)
        resource = Resource(id="fw", kind=ResourceKind.FILE_CONTENT,
                            target="/lib/firmware/fw.bin", source="https://mirror.local/fw.bin")
        assert StateProber(fake_system).probe(resource).matches_desired

    def test_missing_file(self, fake_system):
        resource = Resource(id="x", kind=ResourceKind.FILE_CONTENT, target="/etc/x",
                            desired="x")
        result = StateProber(fake_system).probe(resource)
        assert not result.present
        assert result.observed_value is None
        assert not result.matches_desired

    def test_absent_file(self, fake_system):
        resource = Resource(id="x", kind=ResourceKind.FILE_CONTENT, target="/etc/x",
                            ensure=Ensure.ABSENT)
        prober = StateProber(fake_system)
        assert prober.probe(resource).matches_desired
        fake_system.files.files["/etc/x"] = (b"x", 0o644)
        assert not prober.probe(resource).matches_desired


class TestModuleProbe:
    """Kernel module resources."""

    def test_blacklisted(self, fake_system):
        fake_system.modules.blacklisted.add("panfrost")
        resource = Resource(id="bl", kind=ResourceKind.KERNEL_MODULE_BLACKLISTED,
                            target="panfrost", desired=True)

        result = StateProber(fake_system).probe(resource)

        assert result.matches_desired
        assert result.observed_value == "true"

    def test_not_blacklisted(self, fake_system):
        resource = Resource(id="bl", kind=ResourceKind.KERNEL_MODULE_BLACKLISTED,
                            target="panfrost", desired=True)
        result = StateProber(fake_system).probe(resource)
        assert not result.matches_desired
        assert result.observed_value == "false"

    def test_loaded_module_name_normalized(self, fake_system):
        """Dashes and underscores name the same module."""
        fake_system.modules.loaded.add("bifrost_kbase")
        resource = Resource(id="mod", kind=ResourceKind.KERNEL_MODULE_LOADED,
                            target="bifrost-kbase", desired=True)
        assert StateProber(fake_system).probe(resource).matches_desired

    def test_module_should_not_be_loaded(self, fake_system):
        fake_system.modules.loaded.add("panfrost")
        resource = Resource(id="mod", kind=ResourceKind.KERNEL_MODULE_LOADED,
                            target="panfrost", desired=False)
        assert not StateProber(fake_system).probe(resource).matches_desired


class TestEnvVarProbe:
    """env_var_set resources."""

    def test_value_matches(self, fake_system):
        fake_system.environment.values["LIBGL_KOPPER_DISABLE"] = "true"
        resource = Resource(id="zink", kind=ResourceKind.ENV_VAR_SET,
                            target="LIBGL_KOPPER_DISABLE", desired="true")
        assert StateProber(fake_system).probe(resource).matches_desired

    def test_value_differs(self, fake_system):
        fake_system.environment.values["LIBGL_KOPPER_DISABLE"] = "false"
        resource = Resource(id="zink", kind=ResourceKind.ENV_VAR_SET,
                            target="LIBGL_KOPPER_DISABLE", desired="true")
        result = StateProber(fake_system).probe(resource)
        assert not result.matches_desired
        assert result.observed_value == "false"


class TestProbeAll:
    """Bulk probing."""

    def test_probe_all_keyed_by_id(self, fake_system):
        resources = [
            Resource(id="a", kind=ResourceKind.PACKAGE_INSTALLED, target="a"),
            Resource(id="b", kind=ResourceKind.ENV_VAR_SET, target="B", desired="1"),
        ]
        results = StateProber(fake_system).probe_all(resources)
        assert list(results) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_probe_all_concurrent_matches_sequential(self, fake_system):
        fake_system.packages.installed["a"] = "1"
        resources = [
            Resource(id=f"r{i}", kind=ResourceKind.PACKAGE_INSTALLED, target="a" if i % 2 else "b")
            for i in range(10)
        ]
        prober = StateProber(fake_system)

        concurrent = await prober.probe_all_concurrent(resources, workers=3)

        assert concurrent == prober.probe_all(resources)
        assert list(concurrent) == [r.id for r in resources]


class TestCommandCheck:
    """command_output checks."""

    CLINFO_LIST = "Platform #0: ARM Platform\n `-- Device #0: Mali-LODX r0p0\n"

    def check(self, **expect) -> Resource:
        return Resource(id="opencl", kind=ResourceKind.COMMAND_OUTPUT, target="clinfo --list",
                        desired=OutputExpectation(**expect))

    def test_expected_output(self, fake_system):
        fake_system.commands.responses["clinfo"] = (0, self.CLINFO_LIST, "")

        result = StateProber(fake_system).probe(self.check(all_of=("Platform #0", "Mali")))

        assert result.matches_desired
        assert result.observed_value == "Platform #0: ARM Platform | `-- Device #0: Mali-LODX r0p0"
        assert fake_system.commands.commands == [["clinfo", "--list"]]

    def test_missing_output(self, fake_system):
        fake_system.commands.responses["clinfo"] = (0, "Platform #0: Clover\n", "")

        result = StateProber(fake_system).probe(
            self.check(all_of=("Platform #0",), any_of=("Mali", "Valhall"))
        )

        assert result.present
        assert not result.matches_desired
        assert result.detail == "missing 'Mali' or 'Valhall'"

    def test_command_failed(self, fake_system):
        fake_system.commands.responses["clinfo"] = (
            127, "", "clinfo: command not found\n"
        )

        result = StateProber(fake_system).probe(self.check(all_of=("Mali",)))

        assert not result.present
        assert not result.matches_desired
        assert result.observed_value == "clinfo: command not found"
        assert result.detail == "command failed (command not found)"

    def test_exit_status_only(self, fake_system):
        fake_system.commands.responses["clinfo"] = (1, "", "")
        assert not StateProber(fake_system).probe(self.check()).matches_desired

        fake_system.commands.responses["clinfo"] = (0, "", "")
        assert StateProber(fake_system).probe(self.check()).matches_desired

    def test_long_output_is_clipped(self, fake_system):
        fake_system.commands.responses["clinfo"] = (0, "x" * 500, "")
        result = StateProber(fake_system).probe(self.check())
        assert len(result.observed_value) == 200
        assert result.observed_value.endswith("...")


class TestVenvProbe:
    """python_venv resources."""

    ROOT = "/home/radxa/radxa_venv"

    def venv(self) -> Resource:
        return Resource(id="venv", kind=ResourceKind.PYTHON_VENV, target=self.ROOT + "/")

    def test_present(self, fake_system):
        fake_system.files.files[f"{self.ROOT}/pyvenv.cfg"] = (
            b"home = /usr/bin\ninclude-system-site-packages = false\nversion = 3.11.2\n", 0o644
        )
        fake_system.files.files[f"{self.ROOT}/bin/python"] = (b"", 0o755)

        result = StateProber(fake_system).probe(self.venv())

        assert result.present
        assert result.matches_desired
        assert result.observed_value == "3.11.2"

    def test_missing(self, fake_system):
        result = StateProber(fake_system).probe(self.venv())
        assert not result.present
        assert not result.matches_desired

    def test_interpreter_missing(self, fake_system):
        fake_system.files.files[f"{self.ROOT}/pyvenv.cfg"] = (b"home = /usr/bin\n", 0o644)

        result = StateProber(fake_system).probe(self.venv())

        assert result.present
        assert not result.matches_desired
        assert result.observed_value == "present"
        assert result.detail == "bin/python missing"
