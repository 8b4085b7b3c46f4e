import copy
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from sandbox_fakes import SHELL_PROFILES

from ide_sandbox_runner.errors import NotFoundError
from ide_sandbox_runner.profiles import ProfileRegistry


class ProfileRegistryTests(unittest.TestCase):
    def test_bundled_profiles_cover_all_runtime_images(self) -> None:
        registry = ProfileRegistry.load()

        self.assertEqual(registry.languages(), ["c", "cpp", "go", "java", "node", "python", "rust"])
        for language in registry.languages():
            profile = registry.resolve(language)
            self.assertEqual((profile.user.uid, profile.user.gid), (1001, 1001))
            self.assertEqual(profile.workspace, "/workspace")
            self.assertEqual(profile.entrypoint, ("dumb-init", "--"))
            self.assertTrue(profile.forwards_signals_to_child)
            self.assertEqual(profile.env["HOME"], "/tmp")

    def test_resolve_is_case_insensitive_and_follows_aliases(self) -> None:
        registry = ProfileRegistry.load()

        self.assertIs(registry.resolve("C++"), registry.resolve("cpp"))
        self.assertIs(registry.resolve(" js "), registry.resolve("node"))
        self.assertEqual(registry.resolve("Python3").language, "python")

    def test_unknown_language_raises_not_found(self) -> None:
        registry = ProfileRegistry.load()
        for language in ("cobol", "", None):
            with self.subTest(language=language):
                with self.assertRaises(NotFoundError):
                    registry.resolve(language)

    def test_profiles_are_immutable(self) -> None:
        profile = ProfileRegistry.load().resolve("python")
        with self.assertRaises(Exception):
            profile.image = "evil:latest"  # type: ignore[misc]
        with self.assertRaises(TypeError):
            profile.env["PATH"] = "/evil"  # type: ignore[index]

    def test_build_command_expands_placeholders(self) -> None:
        registry = ProfileRegistry.load()

        java = registry.resolve("java")
        self.assertEqual(
            java.build_command("src/Main.java"),
            ["sh", "-c", "javac src/Main.java && exec java $JAVA_OPTS Main"],
        )
        python = registry.resolve("python")
        self.assertEqual(python.build_command("my app.py"), ["python3", "my app.py"])
        self.assertEqual(
            python.build_command("x.py", ["sh", "-c", "cat {main}; ls {workspace}"], workspace="/host/ws"),
            ["sh", "-c", "cat x.py; ls /host/ws"],
        )
        cpp = registry.resolve("cpp")
        self.assertIn("'a b.cpp'", cpp.build_command("a b.cpp")[2])
        self.assertEqual(cpp.launch_argv(["./main"]), ["dumb-init", "--", "./main"])

    def test_load_from_yaml_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "profiles.yaml"
            path.write_text(
                "version: 1\n"
                "defaults:\n"
                "  user: {name: appuser, uid: 1001, gid: 1001}\n"
                "  entrypoint: [dumb-init, --]\n"
                "  forwards_signals_to_child: true\n"
                "profiles:\n"
                "  ruby:\n"
                "    image: ide-ruby:latest\n"
                "    default_command: [ruby, '{main}']\n",
                encoding="utf-8",
            )
            registry = ProfileRegistry.load(path)

        self.assertEqual(registry.languages(), ["ruby"])
        self.assertEqual(registry.snapshot()["ruby"]["image"], "ide-ruby:latest")

    def test_invalid_documents_are_rejected_at_load(self) -> None:
        def variant(mutate):
            document = copy.deepcopy(SHELL_PROFILES)
            mutate(document)
            return document

        cases = {
            "version": variant(lambda d: d.update(version=2)),
            "no image": variant(lambda d: d["profiles"]["shell"].pop("image")),
            "root user": variant(lambda d: d["defaults"].update(user={"name": "root", "uid": 0, "gid": 0})),
            "no signal forwarding": variant(lambda d: d["defaults"].update(forwards_signals_to_child=False)),
            "relative workspace": variant(lambda d: d["defaults"].update(workspace="workspace")),
            "no command": variant(lambda d: d["profiles"]["shell"].pop("default_command")),
            "unknown limit": variant(lambda d: d["profiles"]["shell"].update(default_limits={"gpus": 1})),
            "alias clash": variant(
                lambda d: d["profiles"].update(
                    bash={"image": "ide-bash:latest", "aliases": ["sh"], "default_command": ["bash", "{main}"]}
                )
            ),
        }
        for name, document in cases.items():
            with self.subTest(case=name):
                with self.assertRaises(RuntimeError):
                    ProfileRegistry.from_mapping(document)

    def test_broken_yaml_file_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "profiles.yaml"
            path.write_text("version: [1\n", encoding="utf-8")
            with self.assertRaises(RuntimeError):
                ProfileRegistry.load(path)


if __name__ == "__main__":
    unittest.main()
