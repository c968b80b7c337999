from runbox.core.models import Limits
from runbox.settings import load_settings


def test_yaml_then_env(tmp_path, monkeypatch):
    conf = tmp_path / "runbox.yaml"
    limits = tmp_path / "limits.yaml"
    conf.write_text(
        f"queue_name: jobs\nmax_retries: 5\nlimits_file: {limits}\nfast_languages: [python]\n",
        encoding="utf-8",
    )
    limits.write_text("memory:\n  max: 67108864\n  swap_max: 0\npids:\n  max: 32\n", encoding="utf-8")
    monkeypatch.setenv("RUNBOX_CONF", str(conf))
    monkeypatch.setenv("RUNBOX_MAX_RETRIES", "2")

    s = load_settings()
    assert s.queue_name == "jobs"
    assert s.max_retries == 2  # env wins over the file
    assert s.fast_languages == ["python"]

    lim = Limits.from_config(s.limits)
    assert lim.memory_bytes == 64 * 1024 * 1024
    assert lim.memswap_bytes == lim.memory_bytes
    assert lim.pids == 32
    assert lim.cpu_shares == 512


def test_missing_files_fall_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("RUNBOX_CONF", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("RUNBOX_LIMITS_FILE", str(tmp_path / "absent-limits.yaml"))
    s = load_settings()
    assert s.queue_name == "code_execution"
    assert s.message_ttl_ms == 300_000
    assert s.limits == {}
