import pytest

from fracta.config import Config
from fracta.errors import HookFailed
from fracta.hooks import HookContext, hook_path, run_hook


@pytest.fixture
def ctx(tmp_path):
    main = tmp_path / "main"
    wt = tmp_path / "wt"
    main.mkdir()
    wt.mkdir()
    return HookContext(
        name="feature/x",
        worktree_path=wt,
        main_repo=main,
        port_offset=3000,
        compose_base=wt / "docker-compose.yml",
        compose_file=wt / ".fracta" / "compose.generated.yml",
    )


class TestHookEnv:
    def test_variables(self, ctx):
        env = ctx.env()
        assert env["FRACTA_NAME"] == "feature/x"
        assert env["PORT_OFFSET"] == "3000"
        assert env["MAIN_REPO"] == str(ctx.main_repo)
        assert env["COMPOSE_OVERRIDE"].endswith("compose.generated.yml")
        assert "PATH" in env


class TestRunHook:
    def test_nothing_configured(self, ctx):
        assert run_hook("post_add", ctx.worktree_path, ctx, Config()) is False

    def test_config_command(self, ctx):
        out = ctx.worktree_path / "out.txt"
        config = Config(hooks={"post_add": f'echo "$FRACTA_NAME $PORT_OFFSET" > {out}'})
        assert run_hook("post_add", ctx.worktree_path, ctx, config) is True
        assert out.read_text().strip() == "feature/x 3000"

    def test_runs_in_working_dir(self, ctx):
        config = Config(hooks={"pre_up": "pwd > where.txt"})
        run_hook("pre_up", ctx.worktree_path, ctx, config)
        assert (ctx.worktree_path / "where.txt").read_text().strip() == str(ctx.worktree_path)

    def test_hook_file(self, ctx):
        path = hook_path(ctx.main_repo, "pre_up")
        path.parent.mkdir(parents=True)
        path.write_text(f"#!/bin/sh\ntouch {ctx.worktree_path}/ran\n")
        path.chmod(0o755)
        assert run_hook("pre_up", ctx.worktree_path, ctx, Config()) is True
        assert (ctx.worktree_path / "ran").exists()

    def test_config_wins_over_file(self, ctx):
        path = hook_path(ctx.main_repo, "pre_up")
        path.parent.mkdir(parents=True)
        path.write_text(f"#!/bin/sh\ntouch {ctx.worktree_path}/file-ran\n")
        path.chmod(0o755)
        config = Config(hooks={"pre_up": f"touch {ctx.worktree_path}/config-ran"})
        run_hook("pre_up", ctx.worktree_path, ctx, config)
        assert (ctx.worktree_path / "config-ran").exists()
        assert not (ctx.worktree_path / "file-ran").exists()

    def test_non_executable_skipped(self, ctx, caplog):
        path = hook_path(ctx.main_repo, "pre_up")
        path.parent.mkdir(parents=True)
        path.write_text("#!/bin/sh\nexit 1\n")
        path.chmod(0o644)
        with caplog.at_level("WARNING", logger="fracta"):
            assert run_hook("pre_up", ctx.worktree_path, ctx, Config()) is False
        assert "not executable" in caplog.text

    def test_failure(self, ctx):
        config = Config(hooks={"pre_down": "exit 3"})
        with pytest.raises(HookFailed, match=r"Hook pre_down failed \(exit 3\)"):
            run_hook("pre_down", ctx.worktree_path, ctx, config)

    def test_missing_working_dir_falls_back_to_main(self, ctx, tmp_path):
        config = Config(hooks={"pre_add": "pwd > where.txt"})
        run_hook("pre_add", tmp_path / "not-yet", ctx, config)
        assert (ctx.main_repo / "where.txt").exists()
