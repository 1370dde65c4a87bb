"""Tests for the galvn command line runner."""
import json

from conftest import make_batch, script_dict
from galvn.cli import main


def write_script(tmp_path):
    folder = tmp_path / "stories" / "99_demo" / "script"
    folder.mkdir(parents=True)
    path = folder / "chapters.json"
    path.write_text(json.dumps(script_dict("demo"), ensure_ascii=False), encoding="utf-8")
    return path


class TestCli:

    def test_play_script_non_interactive(self, tmp_path, capsys):
        save_dir = tmp_path / "save"
        path = write_script(tmp_path)
        assert main(["--save-dir", str(save_dir), "play", str(path), "--choose", "0"]) == 0
        out = capsys.readouterr().out
        assert "艾琳娜：你来了。" in out
        assert "[CG cg_01.png]" in out
        assert "誓约" in out
        assert "结局: good" in out

        assert main(["--save-dir", str(save_dir), "records"]) == 0
        stats = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert stats["total_completions"] == 1
        assert stats["good_endings"] == 1

    def test_play_generated_file(self, tmp_path, capsys):
        story = tmp_path / "story.json"
        story.write_text(json.dumps({
            "initial": make_batch(2, choices=("x",)).to_dict(),
            "branches": {"x": make_batch(1, choices=(), prefix="x").to_dict()},
        }, ensure_ascii=False), encoding="utf-8")
        code = main([
            "--save-dir", str(tmp_path / "save"), "play", "preset_tsundere",
            "--generated", str(story), "--choose", "0", "--no-record",
        ])
        out = capsys.readouterr().out
        assert code == 0
        assert "雯曦：line 0" in out
        assert "雯曦：x 0" in out
        assert "结局" not in out

    def test_play_unknown_script(self, tmp_path, capsys):
        code = main(["--save-dir", str(tmp_path), "play", "nope", "--stories", str(tmp_path)])
        assert code == 1
        assert "Failed to start nope" in capsys.readouterr().out

    def test_saves_empty(self, tmp_path, capsys):
        assert main(["--save-dir", str(tmp_path), "saves"]) == 0
        assert "No saves" in capsys.readouterr().out

    def test_cache_stats_and_clear(self, tmp_path, capsys):
        assert main(["--save-dir", str(tmp_path), "cache", "stats"]) == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["total"] == 3
        assert stats["cached"] == 0
        assert main(["--save-dir", str(tmp_path), "cache", "clear"]) == 0
        assert "Cache cleared" in capsys.readouterr().out
