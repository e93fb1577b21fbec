import pytest

import ghostbuster
from ghostbuster import PatchError, main, run

FOO_HEADER = (
    "// Type definitions for foo 1.2\n"
    "// Definitions by: A <https://github.com/alice>\n"
    "//                 B <https://github.com/ghostuser>\n"
    "// Definitions: https://github.com/DefinitelyTyped/DefinitelyTyped\n"
    "\n"
    "export function foo(): void;\n"
)
BAR_HEADER = (
    "// Type definitions for bar 1.0\n"
    "// Definitions by: Org <https://github.com/someorg>\n"
    "// Definitions: https://github.com/DefinitelyTyped/DefinitelyTyped\n"
)


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "types"
    for name, content in [("foo", FOO_HEADER), ("bar", BAR_HEADER)]:
        (root / name).mkdir(parents=True)
        (root / name / "index.d.ts").write_text(content, encoding="utf-8")
    return root


def test_run_patches_only_files_with_ghosts(tree, fake_github):
    client = fake_github(users={"alice"}, orgs={"someorg"})

    patched = run([str(tree)], client)

    assert patched == [str(tree / "foo" / "index.d.ts")]
    assert (tree / "foo" / "index.d.ts").read_text(encoding="utf-8") == FOO_HEADER.replace(
        "//                 B <https://github.com/ghostuser>\n", ""
    )
    assert (tree / "bar" / "index.d.ts").read_text(encoding="utf-8") == BAR_HEADER


def test_run_checks_the_union_once(tree, fake_github):
    client = fake_github(users={"alice"}, orgs={"someorg"})
    run([str(tree)], client)
    assert client.calls == [
        ("user", ["alice", "ghostuser", "someorg"]),
        ("organization", ["ghostuser", "someorg"]),
    ]


def test_second_run_finds_no_ghosts(tree, fake_github, capsys):
    run([str(tree)], fake_github(users={"alice"}, orgs={"someorg"}))
    capsys.readouterr()

    assert run([str(tree)], fake_github(users={"alice"}, orgs={"someorg"})) == []
    assert "No ghosts found" in capsys.readouterr().out


def test_run_dry_run_leaves_files_alone(tree, fake_github):
    patched = run([str(tree)], fake_github(users={"alice"}, orgs={"someorg"}), dry_run=True)
    assert patched == [str(tree / "foo" / "index.d.ts")]
    assert (tree / "foo" / "index.d.ts").read_text(encoding="utf-8") == FOO_HEADER


def test_run_aborts_on_patch_error(tree, fake_github, monkeypatch):
    def broken(header, ghosts):
        raise PatchError("Definition header not in expected order")

    monkeypatch.setattr(ghostbuster, "patch_text", broken)
    with pytest.raises(PatchError):
        run([str(tree)], fake_github(users={"alice"}, orgs={"someorg"}))


def test_main_requires_token(monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    called = []
    monkeypatch.setattr(ghostbuster, "run", lambda *a, **k: called.append(a))
    with pytest.raises(SystemExit, match="GITHUB_TOKEN"):
        main(["types"])
    assert called == []


def test_main_reports_fatal_errors(monkeypatch, capsys):
    monkeypatch.setenv("GITHUB_TOKEN", "tok")

    def failing(*args, **kwargs):
        raise PatchError("No '// Definitions:'")

    monkeypatch.setattr(ghostbuster, "run", failing)
    assert main(["types"]) == 1
    assert "No '// Definitions:'" in capsys.readouterr().err


def test_main_passes_options_to_run(monkeypatch, capsys):
    monkeypatch.setenv("GITHUB_TOKEN", "tok")
    seen = {}

    def fake_run(roots, client, batch_size, dry_run):
        seen.update(roots=roots, batch_size=batch_size, dry_run=dry_run, client=client)
        return ["a", "b"]

    monkeypatch.setattr(ghostbuster, "run", fake_run)
    assert main(["one", "two", "--batch-size", "50", "--dry-run"]) == 0
    assert seen["roots"] == ["one", "two"]
    assert seen["batch_size"] == 50
    assert seen["dry_run"] is True
    assert isinstance(seen["client"], ghostbuster.GitHubClient)
    assert "Would patch 2 files" in capsys.readouterr().out
