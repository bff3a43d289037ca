import pathlib
import threading

import pytest

from relsign.deep_path import DeepPath
from relsign.errors import ConfigError, PlanValidationError
from relsign.registry import TransformRegistry, load_plan, registry_from_plan
from relsign.result import TransformOp


def _plan(*entries):
    return {"plan_version": "1", "entries": list(entries)}


def test_lookup_unregistered_is_none():
    reg = TransformRegistry({DeepPath.of("a.exe"): TransformOp.EXECUTABLE_SIGN})
    assert reg.lookup(DeepPath.of("b.exe")) is TransformOp.NONE
    assert reg.lookup(DeepPath.of("a.exe")) is TransformOp.EXECUTABLE_SIGN


def test_consume_removes_entry_once():
    p = DeepPath.of("a.zip", "tool.exe")
    reg = TransformRegistry({p: TransformOp.EXECUTABLE_SIGN})
    assert p in reg
    assert reg.consume(p) is True
    assert p not in reg
    assert reg.lookup(p) is TransformOp.NONE
    assert reg.consume(p) is False
    assert reg.remaining_entries() == []


def test_remaining_entries_sorted():
    reg = TransformRegistry({
        DeepPath.of("z"): TransformOp.CODE_SIGN,
        DeepPath.of("a", "b"): TransformOp.CODE_SIGN,
    })
    assert reg.remaining_entries() == [DeepPath.of("a", "b"), DeepPath.of("z")]
    assert len(reg) == 2
    assert reg.ops() == {TransformOp.CODE_SIGN}


def test_none_transform_rejected():
    with pytest.raises(ConfigError):
        TransformRegistry({DeepPath.of("a"): TransformOp.NONE})


def test_concurrent_consume_only_one_winner():
    p = DeepPath.of("x")
    reg = TransformRegistry({p: TransformOp.CODE_SIGN})
    wins = []

    def worker():
        wins.append(reg.consume(p))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert wins.count(True) == 1


def test_registry_from_plan():
    reg = registry_from_plan(_plan(
        {"path": ["manual/linux.tar.gz", "quick-lint-js/bin/quick-lint-js"], "transform": "detached-signature"},
        {"path": ["macos/quick-lint-js"], "transform": "code-sign"},
        {"path": ["a.nupkg", "tools/windows.zip", "bin/app.exe"], "transform": "executable-sign"},
    ))
    assert len(reg) == 3
    assert reg.lookup(DeepPath.of("macos/quick-lint-js")) is TransformOp.CODE_SIGN
    assert (
        reg.lookup(DeepPath.of("a.nupkg", "tools/windows.zip", "bin/app.exe"))
        is TransformOp.EXECUTABLE_SIGN
    )


@pytest.mark.parametrize(
    "plan",
    [
        {"entries": []},
        {"plan_version": "2", "entries": []},
        _plan({"path": [], "transform": "code-sign"}),
        _plan({"path": ["a", "b", "c", "d"], "transform": "code-sign"}),
        _plan({"path": ["a", ""], "transform": "code-sign"}),
        _plan({"path": ["a\\b.exe"], "transform": "code-sign"}),
        _plan({"path": ["a"], "transform": "none"}),
        _plan({"path": ["a"], "transform": "code-sign", "extra": True}),
        ["not", "a", "mapping"],
    ],
)
def test_invalid_plans_rejected(plan):
    with pytest.raises(PlanValidationError) as ei:
        registry_from_plan(plan)
    assert ei.value.errors


def test_duplicate_paths_rejected():
    with pytest.raises(PlanValidationError, match="duplicate"):
        registry_from_plan(_plan(
            {"path": ["a"], "transform": "code-sign"},
            {"path": ["a"], "transform": "executable-sign"},
        ))


def test_load_plan_from_yaml(tmp_path: pathlib.Path):
    plan = tmp_path / "plan.yaml"
    plan.write_text(
        'plan_version: "1"\n'
        "entries:\n"
        '  - path: ["windows.zip", "app.exe"]\n'
        "    transform: executable-sign\n",
        encoding="utf-8",
    )
    reg = load_plan(plan)
    assert reg.remaining_entries() == [DeepPath.of("windows.zip", "app.exe")]


def test_load_plan_missing_file(tmp_path: pathlib.Path):
    with pytest.raises(ConfigError, match="not found"):
        load_plan(tmp_path / "nope.yaml")


def test_load_plan_bad_yaml(tmp_path: pathlib.Path):
    plan = tmp_path / "plan.yaml"
    plan.write_text("entries: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_plan(plan)


def test_example_plan_is_valid():
    repo_root = pathlib.Path(__file__).resolve().parents[1]
    reg = load_plan(repo_root / "plans" / "example.plan.yaml")
    assert len(reg) > 0
