import json
import signal
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parent))
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from sandbox_fakes import fast_settings, shell_registry

from ide_sandbox_runner.backends import DockerBackend, create_backend, LocalProcessBackend
from ide_sandbox_runner.config import DockerPolicy
from ide_sandbox_runner.controller import SandboxController
from ide_sandbox_runner.errors import InfrastructureFault
from ide_sandbox_runner.limits import compute_limits
from ide_sandbox_runner.models import ExecutionRequest, SourceFile
from ide_sandbox_runner.profiles import ProfileRegistry


def _completed(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class DockerBackendTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.settings = fast_settings(Path(self._tmp.name) / "jobs", backend="docker")
        self.backend = DockerBackend(DockerPolicy())
        self.controller = SandboxController(self.backend, self.settings)
        self.profile = ProfileRegistry.load().resolve("cpp")
        self.files = (SourceFile("main.cpp", b"int main() { return 7; }\n"),)
        request = ExecutionRequest(language="cpp", files=self.files, limit_overrides={"network": "bridge"})
        self.limits = compute_limits(request, self.profile, self.settings)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _create(self):
        with patch("ide_sandbox_runner.backends.subprocess.run") as run_mock, patch(
            "ide_sandbox_runner.backends.os.geteuid", return_value=1000
        ):
            run_mock.return_value = _completed(stdout=b"c0ffee\n")
            handle = self.controller.create(self.profile, self.limits, self.files, sandbox_id="exec-1")
        return handle, run_mock

    def test_create_has_mandatory_isolation_flags(self) -> None:
        handle, run_mock = self._create()

        self.assertEqual(handle.backend_id, "c0ffee")
        docker_args = run_mock.call_args_list[0].args[0]
        joined = " ".join(docker_args)
        for flag in (
            "--user 1001:1001",
            "--network none",
            "--read-only",
            "--cap-drop ALL",
            "--security-opt no-new-privileges",
            "--pids-limit 50",
            "--memory 256m",
            "--memory-swap 256m",
            "--ulimit nofile=1024:1024",
            "--label ide.sandbox=1",
            "--label ide.execution=exec-1",
            "--label ide.language=cpp",
            "--entrypoint dumb-init ide-cpp:latest --",
        ):
            self.assertIn(flag, joined)
        self.assertIn(f"--ulimit fsize={100 * 1024 * 1024}:{100 * 1024 * 1024}", joined)
        self.assertIn("/tmp:rw,nosuid,nodev,noexec,size=50m", joined)
        self.assertIn("/var/tmp:rw,nosuid,nodev,noexec,size=10m", joined)
        self.assertNotIn("nproc", joined)
        self.assertEqual(docker_args[-3:], ["sh", "-c", "g++ -O2 -o main main.cpp && exec ./main"])

        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed()):
            self.controller.destroy(handle)

    def test_workspace_is_a_size_capped_tmpfs_fed_from_a_read_only_mount(self) -> None:
        handle, run_mock = self._create()
        docker_args = run_mock.call_args_list[0].args[0]

        tmpfs = [docker_args[i + 1] for i, arg in enumerate(docker_args) if arg == "--tmpfs"]
        self.assertIn("/workspace:rw,nosuid,nodev,exec,size=100m,uid=1001,gid=1001,mode=0700", tmpfs)
        volumes = [docker_args[i + 1] for i, arg in enumerate(docker_args) if arg == "-v"]
        self.assertEqual(volumes, [f"{handle.workspace_dir.resolve()}:/opt/sandbox/src:ro"])

        entry = docker_args.index("ide-cpp:latest")
        self.assertEqual(
            docker_args[entry + 1 : entry + 6],
            ["--", "sh", "-c", 'cp -R /opt/sandbox/src/. /workspace/ && exec "$@"', "sandbox-stage"],
        )

        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed()):
            self.controller.destroy(handle)

    def test_each_container_mounts_only_its_own_workspace(self) -> None:
        commands = {}
        handles = []
        for sandbox_id in ("alpha", "beta"):
            with patch("ide_sandbox_runner.backends.subprocess.run") as run_mock, patch(
                "ide_sandbox_runner.backends.os.geteuid", return_value=1000
            ):
                run_mock.return_value = _completed(stdout=sandbox_id.encode("ascii") + b"\n")
                handle = self.controller.create(self.profile, self.limits, self.files, sandbox_id=sandbox_id)
            handles.append(handle)
            commands[sandbox_id] = run_mock.call_args_list[0].args[0]

        jobs_dir = str(self.settings.jobs_dir.resolve())
        for handle in handles:
            args = commands[handle.sandbox_id]
            host_paths = [arg.split(":", 1)[0] for arg in args if arg.startswith(jobs_dir)]
            self.assertEqual(host_paths, [str(handle.workspace_dir.resolve())])
            self.assertNotIn(str(self.settings.jobs_dir.resolve()) + ":", " ".join(args))

        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed()):
            for handle in handles:
                self.controller.destroy(handle)

    def test_source_mount_is_readable_but_not_world_writable(self) -> None:
        handle, _ = self._create()
        mode = (handle.workspace_dir / "main.cpp").stat().st_mode & 0o777
        self.assertEqual(mode, 0o644)
        self.assertEqual(handle.workspace_dir.stat().st_mode & 0o777, 0o755)

        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed()):
            self.controller.destroy(handle)

    def test_create_failure_is_infrastructure_fault_and_cleans_workspace(self) -> None:
        with patch("ide_sandbox_runner.backends.subprocess.run") as run_mock, patch(
            "ide_sandbox_runner.backends.os.geteuid", return_value=1000
        ):
            run_mock.return_value = _completed(returncode=125, stderr=b"Unable to find image")
            with self.assertRaises(InfrastructureFault):
                self.controller.create(self.profile, self.limits, self.files, sandbox_id="exec-2")

        self.assertFalse((self.settings.jobs_dir / "exec-2").exists())

    def test_missing_docker_binary_is_infrastructure_fault(self) -> None:
        with patch("ide_sandbox_runner.backends.subprocess.run", side_effect=FileNotFoundError("docker")), patch(
            "ide_sandbox_runner.backends.os.geteuid", return_value=1000
        ):
            with self.assertRaises(InfrastructureFault):
                self.controller.create(self.profile, self.limits, self.files)

    def test_launch_attaches_to_container(self) -> None:
        handle, _ = self._create()
        with patch("ide_sandbox_runner.backends.subprocess.Popen") as popen_mock:
            self.backend.launch(handle)

        args, kwargs = popen_mock.call_args
        self.assertEqual(args[0], ["docker", "start", "--attach", "--interactive", "c0ffee"])
        self.assertTrue(kwargs["start_new_session"])
        self.assertEqual(kwargs["stdin"], subprocess.PIPE)

        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed()):
            handle.process = None
            self.controller.destroy(handle)

    def test_outcome_maps_container_state(self) -> None:
        handle, _ = self._create()
        cases = [
            ({"ExitCode": 7, "OOMKilled": False, "Error": ""}, 7, (7, None, None)),
            ({"ExitCode": 143, "OOMKilled": False, "Error": ""}, 143, (None, signal.SIGTERM, None)),
            ({"ExitCode": 137, "OOMKilled": True, "Error": ""}, 137, (None, signal.SIGKILL, None)),
            ({"ExitCode": 0, "OOMKilled": False, "Error": "mount failed"}, 0, (None, None, "mount failed")),
        ]
        for state, returncode, expected in cases:
            with self.subTest(state=state):
                stdout = json.dumps(state).encode("utf-8")
                with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed(stdout=stdout)):
                    status = self.backend.outcome(handle, returncode)
                self.assertEqual((status.exit_code, status.signal, status.error), expected)
                self.assertEqual(status.usage.oom_killed, state["OOMKilled"])

        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed()):
            self.controller.destroy(handle)

    def test_signal_uses_docker_kill(self) -> None:
        handle, _ = self._create()
        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed()) as run_mock:
            self.backend.signal(handle, signal.SIGTERM)
            self.backend.kill(handle)

        commands = [call.args[0] for call in run_mock.call_args_list]
        self.assertEqual(commands[0], ["docker", "kill", "--signal", "SIGTERM", "c0ffee"])
        self.assertEqual(commands[1], ["docker", "kill", "--signal", "SIGKILL", "c0ffee"])

        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed()):
            self.controller.destroy(handle)

    def test_teardown_removes_container_and_tolerates_missing_one(self) -> None:
        handle, _ = self._create()
        missing = _completed(returncode=1, stderr=b"Error: No such container: c0ffee")
        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=missing) as run_mock:
            self.controller.destroy(handle)

        self.assertEqual(run_mock.call_args_list[0].args[0], ["docker", "rm", "--force", "--volumes", "c0ffee"])
        self.assertEqual(run_mock.call_count, 1)
        self.assertFalse(handle.root_dir.exists())

    def test_list_sandboxes_parses_labels(self) -> None:
        listing = b"abc\texec-1\t1700000000\ndef\texec-2\tbogus\n\n"
        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed(stdout=listing)) as run_mock:
            records = self.backend.list_sandboxes()

        self.assertIn("label=ide.sandbox=1", run_mock.call_args.args[0])
        self.assertEqual([(r.container_id, r.execution_id, r.created_at) for r in records], [
            ("abc", "exec-1", 1700000000.0),
            ("def", "exec-2", 0.0),
        ])

    def test_health_reports_daemon_and_images(self) -> None:
        responses = [_completed(stdout=b"27.0.1\n"), _completed(), _completed(returncode=1)]
        with patch("ide_sandbox_runner.backends.subprocess.run", side_effect=responses):
            snapshot = self.backend.health(images=["ide-cpp:latest", "ide-go:latest"])

        self.assertTrue(snapshot["available"])
        self.assertEqual(snapshot["version"], "27.0.1")
        self.assertEqual(snapshot["images"], {"ide-cpp:latest": True, "ide-go:latest": False})

    def test_health_when_daemon_is_down(self) -> None:
        with patch("ide_sandbox_runner.backends.subprocess.run", return_value=_completed(returncode=1, stderr=b"Cannot connect")):
            snapshot = self.backend.health(images=["ide-cpp:latest"])

        self.assertFalse(snapshot["available"])
        self.assertEqual(snapshot["error"], "Cannot connect")

    def test_create_backend_by_name(self) -> None:
        self.assertIsInstance(create_backend("docker"), DockerBackend)
        self.assertIsInstance(create_backend("LOCAL"), LocalProcessBackend)
        with self.assertRaises(ValueError):
            create_backend("firecracker")


class LocalProcessBackendTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.settings = fast_settings(Path(self._tmp.name) / "jobs")
        self.profile = shell_registry().resolve("shell")
        self.files = (SourceFile("main.sh", b"exit 0\n"),)
        request = ExecutionRequest(language="shell", files=self.files)
        self.limits = compute_limits(request, self.profile, self.settings)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_unprivileged_runner_does_not_isolate_sandboxes(self) -> None:
        backend = LocalProcessBackend(drop_privileges=False)

        self.assertFalse(backend.isolates_sandboxes)
        self.assertFalse(backend.health()["isolated"])
        self.assertTrue(DockerBackend(DockerPolicy()).isolates_sandboxes)

    def test_root_runner_gives_each_sandbox_its_own_uid(self) -> None:
        backend = LocalProcessBackend(uid_range=(300000, 300002))
        controller = SandboxController(backend, self.settings)

        with patch("ide_sandbox_runner.backends.os.geteuid", return_value=0), patch(
            "ide_sandbox_runner.backends.os.chown"
        ) as chown_mock:
            self.assertTrue(backend.isolates_sandboxes)
            first = controller.create(self.profile, self.limits, self.files)
            second = controller.create(self.profile, self.limits, self.files)

            self.assertEqual({first.backend_state["uid"], second.backend_state["uid"]}, {300000, 300001})
            self.assertEqual({call.args[1] for call in chown_mock.call_args_list}, {300000, 300001})
            self.assertEqual(chown_mock.call_args_list[0].args[0], first.root_dir)

            with self.assertRaises(InfrastructureFault):
                controller.create(self.profile, self.limits, self.files)

            controller.destroy(first)
            self.assertEqual(backend.uids_in_use(), 1)
            third = controller.create(self.profile, self.limits, self.files)
            self.assertEqual(third.backend_state["uid"], 300000)

            controller.destroy(second)
            controller.destroy(third)

        self.assertEqual(backend.uids_in_use(), 0)
        self.assertEqual(list(self.settings.jobs_dir.iterdir()), [])


if __name__ == "__main__":
    unittest.main()
