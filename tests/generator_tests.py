#!/usr/bin/env python3

from __future__ import annotations

import dataclasses
import pathlib
import runpy
import subprocess
import sys
import tempfile
import textwrap
import typing
import unittest

GENERATOR_PATH: pathlib.Path = pathlib.Path(__file__).resolve().parents[1] / "tools" / "versioned_gen.py"
REPO_ROOT: pathlib.Path = pathlib.Path(__file__).resolve().parents[1]

MODELS_SOURCE = textwrap.dedent(
    '''
    """Models with hand-written upgrades."""

    import dataclasses


    @versioned(version(1))
    @versioned(version(2))
    @versioned(version(3))
    record Foo {
        field_0: int,
        @versioned(cfg(2))
        field_1: str,
        @versioned(cfg(1))
        @versioned(cfg(3))
        field_2: int,
    }


    @versioned(version(1))
    @versioned(version(2))
    @versioned(version(3))
    record Bar {
        @versioned(inherit)
        @versioned(cfg(2..))
        field_0: Foo,
    }


    @versioned(version(1))
    @versioned(version(2))
    @versioned(version(3))
    union Baz {
        @versioned(cfg(..3))
        X(str),
        @versioned(cfg(2..))
        Y {
            @versioned(inherit)
            @versioned(cfg(2..))
            foo: Foo,
            @versioned(inherit)
            @versioned(cfg(2..))
            bar: Bar,
        },
    }


    def foo_1_to_2(old: versioned[Foo, 1]) -> versioned[Foo, 2]:
        return versioned[Foo, 2](field_0=old.field_0, field_1="default")


    def foo_2_to_3(old: versioned[Foo, 2]) -> versioned[Foo, 3]:
        return versioned[Foo, 3](field_0=old.field_0, field_2=42)
    '''
).lstrip()


class GeneratorBehaviorTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.generator = GENERATOR_PATH
        cls.repo_root = REPO_ROOT

    def run_gen(
        self, in_path: pathlib.Path, out_path: pathlib.Path, check: bool = False, serde: bool = False
    ) -> subprocess.CompletedProcess[str]:
        cmd = [
            sys.executable,
            str(self.generator),
            "--in",
            str(in_path),
            "--out",
            str(out_path),
        ]
        if check:
            cmd.append("--check")
        if serde:
            cmd.append("--serde")
        return subprocess.run(cmd, cwd=self.repo_root, text=True, capture_output=True)

    def test_targeted_substitution_and_passthrough(self) -> None:
        source = textwrap.dedent(
            """
            import functools

            # @versioned(version(1)) in comment should remain untouched
            TOKEN = "versioned[Demo, 1] in string"


            @functools.lru_cache(maxsize=None)
            def passthrough(k):
                return k


            @versioned(version(1))
            @versioned(version(2))
            record Demo {
                id: int,
                @versioned(cfg(2..))
                label: str,
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "demo.py.versioned"
            out_path = tmp / "demo.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertEqual(result.returncode, 0, msg=result.stderr)
            self.assertIn("generated:", result.stdout)

            generated = out_path.read_text(encoding="utf-8")
            self.assertTrue(generated.startswith("# versioned-generated\n"))
            self.assertIn("def passthrough(k):", generated)
            self.assertIn("@functools.lru_cache(maxsize=None)", generated)
            self.assertIn("@versioned(version(1)) in comment should remain untouched", generated)
            self.assertIn('"versioned[Demo, 1] in string"', generated)
            self.assertIn("class Demo_v1:", generated)
            self.assertIn("class Demo_v2:", generated)
            self.assertIn("Demo = Demo_v2", generated)
            self.assertIn("VersionedDemo = typing.Union[Demo_v1, Demo_v2]", generated)
            self.assertNotIn("record Demo", generated)
            self.assertEqual(generated.count("import dataclasses\n"), 1)
            self.assertEqual(generated.count("import typing\n"), 1)

    def test_generated_module_runs_with_hand_written_conversions(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "models.py.versioned"
            out_path = tmp / "models.py"
            in_path.write_text(MODELS_SOURCE, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertEqual(result.returncode, 0, msg=result.stderr)

            generated = out_path.read_text(encoding="utf-8")
            self.assertIn("def foo_1_to_2(old: Foo_v1) -> Foo_v2:", generated)
            self.assertNotIn("versioned[", generated)

            ns = runpy.run_path(str(out_path))

        def field_names(cls) -> list:
            return [f.name for f in dataclasses.fields(cls)]

        self.assertEqual(field_names(ns["Foo_v1"]), ["field_0", "field_2"])
        self.assertEqual(field_names(ns["Foo_v2"]), ["field_0", "field_1"])
        self.assertEqual(field_names(ns["Foo_v3"]), ["field_0", "field_2"])
        self.assertEqual(ns["Foo_v2"].VERSION, 2)
        self.assertIs(ns["Foo"], ns["Foo_v3"])

        upgraded = ns["foo_2_to_3"](ns["foo_1_to_2"](ns["Foo_v1"](field_0=7, field_2=3)))
        self.assertEqual(upgraded, ns["Foo_v3"](field_0=7, field_2=42))

        self.assertEqual(field_names(ns["Bar_v1"]), [])
        self.assertEqual(dataclasses.fields(ns["Bar_v2"])[0].type, "Foo_v2")
        self.assertEqual(typing.get_type_hints(ns["Bar_v2"], globalns=ns)["field_0"], ns["Foo_v2"])

        baz_v1 = ns["Baz_v1"]
        self.assertEqual(baz_v1.X("hello")._0, "hello")
        self.assertFalse(hasattr(baz_v1, "Y"))
        self.assertFalse(hasattr(ns["Baz_v3"], "X"))

        bar = ns["Bar_v2"](field_0=ns["Foo_v2"](field_0=1, field_1="x"))
        y = ns["Baz_v2"].Y(foo=ns["Foo_v2"](field_0=2, field_1="y"), bar=bar)
        self.assertIsInstance(y, ns["Baz_v2"])
        self.assertEqual(y.bar.field_0.field_1, "x")

    def test_check_mode_reports_drift(self) -> None:
        source = textwrap.dedent(
            """
            @versioned(version(1))
            record A {
                x: int,
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "a.py.versioned"
            out_path = tmp / "a.py"
            in_path.write_text(source, encoding="utf-8")

            missing = self.run_gen(in_path, out_path, check=True)
            self.assertNotEqual(missing.returncode, 0)
            self.assertIn("is missing", missing.stderr)

            first = self.run_gen(in_path, out_path)
            self.assertEqual(first.returncode, 0, msg=first.stderr)

            again = self.run_gen(in_path, out_path)
            self.assertEqual(again.returncode, 0, msg=again.stderr)
            self.assertIn("unchanged:", again.stdout)

            check_ok = self.run_gen(in_path, out_path, check=True)
            self.assertEqual(check_ok.returncode, 0, msg=check_ok.stderr)
            self.assertIn("up-to-date", check_ok.stdout)

            in_path.write_text(source + "# changed\n", encoding="utf-8")
            check_bad = self.run_gen(in_path, out_path, check=True)
            self.assertNotEqual(check_bad.returncode, 0)
            self.assertIn("out of date", check_bad.stderr)

    def test_malformed_range_rejected_with_location(self) -> None:
        source = textwrap.dedent(
            """
            @versioned(version(1))
            record Bad {
                @versioned(cfg(one..))
                x: int,
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "bad.py.versioned"
            out_path = tmp / "bad.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("expected integer literal for range start", result.stderr)
            self.assertRegex(result.stderr, r"bad\.py\.versioned:3:\d+: error:")
            self.assertFalse(out_path.exists())

    def test_unknown_directive_rejected(self) -> None:
        source = textwrap.dedent(
            """
            @versioned(version(1))
            @versioned(rename(Other))
            record Bad {
                x: int,
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "bad.py.versioned"
            out_path = tmp / "bad.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("unrecognised `versioned` directive 'rename'", result.stderr)
            self.assertRegex(result.stderr, r"bad\.py\.versioned:2:12: error:")

    def test_duplicate_version_rejected(self) -> None:
        source = textwrap.dedent(
            """
            @versioned(version(1))
            @versioned(version(1))
            record Twice {
                x: int,
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "twice.py.versioned"
            out_path = tmp / "twice.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("version 1 declared more than once on 'Twice'", result.stderr)
            self.assertFalse(out_path.exists())

    def test_unresolved_reference_rejected(self) -> None:
        source = textwrap.dedent(
            """
            @versioned(version(1))
            record A {
                x: int,
            }

            def upgrade(old: versioned[A, 2]):
                return old
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "ref.py.versioned"
            out_path = tmp / "ref.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("no versioned item 'A' at version 2", result.stderr)
            self.assertRegex(result.stderr, r"ref\.py\.versioned:6:18: error:")

    def test_serde_passthrough_behind_flag(self) -> None:
        source = textwrap.dedent(
            """
            @versioned(version(1))
            @versioned(serde(rename_all="camelCase"))
            @versioned(derive(frozen=True))
            record Wire {
                @json_name("userId")
                user_id: int,
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "wire.py.versioned"
            out_path = tmp / "wire.py"
            in_path.write_text(source, encoding="utf-8")

            rejected = self.run_gen(in_path, out_path)
            self.assertNotEqual(rejected.returncode, 0)
            self.assertIn("directive 'serde'", rejected.stderr)

            result = self.run_gen(in_path, out_path, serde=True)
            self.assertEqual(result.returncode, 0, msg=result.stderr)

            generated = out_path.read_text(encoding="utf-8")
            self.assertIn('@serde(rename_all="camelCase")\n@dataclasses.dataclass(frozen=True)\nclass Wire_v1:', generated)
            self.assertIn(
                """user_id: int = dataclasses.field(metadata={"attributes": ('@json_name("userId")',)})""",
                generated,
            )

    def test_private_union_codegen(self) -> None:
        source = textwrap.dedent(
            """
            @versioned(version(1))
            @versioned(version(2))
            private union Event {
                Started,
                @versioned(cfg(2..))
                Moved(@versioned(cfg(..2)) int, float),
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "event.py.versioned"
            out_path = tmp / "event.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertEqual(result.returncode, 0, msg=result.stderr)

            generated = out_path.read_text(encoding="utf-8")
            self.assertIn("class _Event_v1:", generated)
            self.assertIn("class _Event_v2_Moved(_Event_v2):\n    _0: float\n", generated)
            self.assertIn("_Event_v2.Started = _Event_v2_Started", generated)
            self.assertNotIn("_Event_v1_Moved", generated)
            self.assertIn("_Event = _Event_v2", generated)

            ns = runpy.run_path(str(out_path))
        self.assertEqual(ns["_Event_v2"].Moved(1.5)._0, 1.5)

    def test_items_may_reference_later_items(self) -> None:
        source = textwrap.dedent(
            """
            @versioned(version(1))
            @versioned(version(2))
            record Outer {
                @versioned(inherit)
                inner: Inner,
                @versioned(cfg(2..))
                items: list[versioned[Inner, 2]],
            }


            @versioned(version(1))
            @versioned(version(2))
            record Inner {
                a: int,
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "nested.py.versioned"
            out_path = tmp / "nested.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertEqual(result.returncode, 0, msg=result.stderr)

            generated = out_path.read_text(encoding="utf-8")
            self.assertIn("    inner: 'Inner_v1'\n", generated)
            self.assertIn("    items: 'list[Inner_v2]'\n", generated)

            ns = runpy.run_path(str(out_path))

        hints = typing.get_type_hints(ns["Outer_v2"], globalns=ns)
        self.assertIs(hints["inner"], ns["Inner_v2"])
        self.assertEqual(hints["items"], list[ns["Inner_v2"]])
        outer = ns["Outer_v2"](inner=ns["Inner_v2"](a=1), items=[])
        self.assertEqual(outer.inner.a, 1)

    def test_decorator_references_rewritten(self) -> None:
        source = textwrap.dedent(
            """
            def tag(target):
                def apply(cls):
                    cls.paired_with = target
                    return cls
                return apply


            @versioned(version(1))
            record Inner {
                a: int,
            }


            @versioned(version(1))
            @tag(versioned[Inner, 1])
            union Wrapper {
                @tag(versioned[Inner, 1])
                Only { x: int },
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "tagged.py.versioned"
            out_path = tmp / "tagged.py"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertEqual(result.returncode, 0, msg=result.stderr)

            generated = out_path.read_text(encoding="utf-8")
            self.assertIn("@tag(Inner_v1)\nclass Wrapper_v1:", generated)
            self.assertNotIn("versioned[", generated)

            ns = runpy.run_path(str(out_path))
        self.assertIs(ns["Wrapper_v1"].paired_with, ns["Inner_v1"])
        self.assertIs(ns["Wrapper_v1_Only"].__dict__["paired_with"], ns["Inner_v1"])

    def test_missing_input_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            result = self.run_gen(tmp / "nope.py.versioned", tmp / "nope.py")
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("input file does not exist", result.stderr)


if __name__ == "__main__":
    if len(sys.argv) == 3:
        GENERATOR_PATH = pathlib.Path(sys.argv[1]).resolve()
        REPO_ROOT = pathlib.Path(sys.argv[2]).resolve()
        sys.argv = [sys.argv[0]]
    unittest.main()
