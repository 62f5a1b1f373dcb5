from __future__ import annotations

import json

from gemstudio import cli
from gemstudio.errors import RemoteServiceError
from gemstudio.writer import MANIFEST_NAME

from conftest import FakeClient, unavailable


def _install_client(monkeypatch, script=None):
    clients = []

    def factory(*args, **kwargs):
        client = FakeClient(script=script)
        client.init_args = (args, kwargs)
        clients.append(client)
        return client

    monkeypatch.setattr(cli, "GenAIClient", factory)
    return clients


def test_remix_writes_images_in_order(tmp_path, image_factory, monkeypatch):
    product = image_factory(tmp_path / "in" / "ring.png")
    out_dir = tmp_path / "out"
    clients = _install_client(monkeypatch)

    rc = cli.main([
        "remix", str(product), "--prompt", "ring on silk", "--count", "3",
        "--api-key", "k", "--out-dir", str(out_dir), "--size", "2K", "--aspect-ratio", "1:1",
    ])
    assert rc == 0
    assert len(clients[0].calls) == 3
    assert sorted(p.name for p in out_dir.glob("remix_*.png")) == ["remix_001.png", "remix_002.png", "remix_003.png"]
    records = [json.loads(line) for line in (out_dir / MANIFEST_NAME).read_text(encoding="utf-8").splitlines()]
    assert records[0]["request"]["prompt"] == "ring on silk"
    assert records[0]["request"]["size"] == "2K"


def test_remix_accepts_product_directories(tmp_path, image_factory, monkeypatch):
    folder = tmp_path / "products"
    image_factory(folder / "a.png")
    image_factory(folder / "b.png")
    clients = _install_client(monkeypatch)

    rc = cli.main(["remix", str(folder), "--prompt", "x", "--api-key", "k", "--out-dir", str(tmp_path / "o")])
    assert rc == 0
    inline_parts = [p for p in clients[0].calls[0]["parts"] if "inlineData" in p]
    assert len(inline_parts) == 2


def test_batch_failure_writes_nothing(tmp_path, image_factory, monkeypatch):
    product = image_factory(tmp_path / "ring.png")
    out_dir = tmp_path / "out"
    _install_client(monkeypatch, script=[RemoteServiceError(400, "bad request", reason="INVALID_ARGUMENT")])

    rc = cli.main(["remix", str(product), "--prompt", "x", "--count", "2", "--api-key", "k",
                   "--out-dir", str(out_dir), "--concurrency", "1"])
    assert rc == 1
    assert not out_dir.exists()


def test_permission_denied_exit_code(tmp_path, image_factory, monkeypatch):
    product = image_factory(tmp_path / "ring.png")
    _install_client(monkeypatch, script=[RemoteServiceError(403, "denied")])
    rc = cli.main(["remix", str(product), "--prompt", "x", "--api-key", "k", "--out-dir", str(tmp_path / "o")])
    assert rc == 1


def test_missing_api_key_is_a_usage_error(tmp_path, monkeypatch):
    monkeypatch.delenv(cli.API_KEY_ENV, raising=False)
    rc = cli.main(["remix", str(tmp_path / "x.png"), "--prompt", "x"])
    assert rc == 2


def test_unreadable_input_is_a_usage_error(tmp_path, monkeypatch):
    _install_client(monkeypatch)
    rc = cli.main(["remix", str(tmp_path / "missing.png"), "--prompt", "x", "--api-key", "k"])
    assert rc == 2


def test_studio_runs_every_concept(tmp_path, image_factory, monkeypatch):
    product = image_factory(tmp_path / "pendant.png")
    concepts = tmp_path / "concepts.json"
    concepts.write_text(json.dumps([
        {"id": "1", "full_prompt_for_nano_banana": "on black velvet", "lighting_setup": "rim light"},
        {"id": "2", "full_prompt_for_nano_banana": "on wet stone", "lighting_setup": "softbox"},
    ]), encoding="utf-8")
    clients = _install_client(monkeypatch)
    out_dir = tmp_path / "out"

    rc = cli.main(["studio", str(product), "--concepts", str(concepts), "--per-concept", "2",
                   "--api-key", "k", "--out-dir", str(out_dir)])
    assert rc == 0
    assert len(clients[0].calls) == 4
    assert len(list(out_dir.glob("studio_*.png"))) == 4


def test_studio_rejects_invalid_concepts_json(tmp_path, image_factory, monkeypatch):
    product = image_factory(tmp_path / "pendant.png")
    concepts = tmp_path / "concepts.json"
    concepts.write_text("{not json", encoding="utf-8")
    _install_client(monkeypatch)
    rc = cli.main(["studio", str(product), "--concepts", str(concepts), "--api-key", "k"])
    assert rc == 2


def _plan_reply(text='```json\n{"status": "ok"}\n```'):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _system_prompt(tmp_path, text="You are a creative director."):
    path = tmp_path / "system.txt"
    path.write_text(text, encoding="utf-8")
    return path


def test_analyze_writes_plan(tmp_path, image_factory, monkeypatch):
    reference = image_factory(tmp_path / "model.png")
    product = image_factory(tmp_path / "earring.png")
    prompt_file = _system_prompt(tmp_path)
    out = tmp_path / "plan.json"
    clients = _install_client(monkeypatch, script=[_plan_reply()])

    rc = cli.main(["analyze", str(reference), str(product), "--system-prompt-file", str(prompt_file),
                   "--instruction", "evening", "--mode", "tryon", "--api-key", "k", "--out", str(out), "--quiet"])
    assert rc == 0
    assert json.loads(out.read_text(encoding="utf-8")) == {"status": "ok"}
    call = clients[0].calls[0]
    assert call["system"] == "You are a creative director."
    assert call["model"] == cli.TEXT_MODEL
    assert call["parts"][0] == {"text": "Model Reference Image:"}


def test_analyze_reports_invalid_plan(tmp_path, image_factory, monkeypatch):
    reference = image_factory(tmp_path / "model.png")
    prompt_file = _system_prompt(tmp_path, "sys")
    _install_client(monkeypatch, script=[_plan_reply("sorry")])
    rc = cli.main(["analyze", str(reference), "--system-prompt-file", str(prompt_file), "--api-key", "k", "--quiet"])
    assert rc == 1


def test_analyze_retries_overloaded_service(tmp_path, image_factory, monkeypatch, recorded_sleeps):
    reference = image_factory(tmp_path / "model.png")
    prompt_file = _system_prompt(tmp_path)
    out = tmp_path / "plan.json"
    clients = _install_client(monkeypatch, script=[unavailable(), _plan_reply()])

    rc = cli.main(["analyze", str(reference), "--system-prompt-file", str(prompt_file), "--api-key", "k",
                   "--initial-delay", "0.5", "--out", str(out), "--quiet"])
    assert rc == 0
    assert len(clients[0].calls) == 2
    assert len(recorded_sleeps) == 1
    assert 0.5 <= recorded_sleeps[0] <= 1.5
    assert json.loads(out.read_text(encoding="utf-8")) == {"status": "ok"}


def test_analyze_honors_retry_budget(tmp_path, image_factory, monkeypatch, recorded_sleeps):
    reference = image_factory(tmp_path / "model.png")
    prompt_file = _system_prompt(tmp_path)
    clients = _install_client(monkeypatch, script=[unavailable(), unavailable(), _plan_reply()])

    rc = cli.main(["analyze", str(reference), "--system-prompt-file", str(prompt_file), "--api-key", "k",
                   "--retries", "1", "--quiet"])
    assert rc == 1
    assert len(clients[0].calls) == 2


def test_analyze_passes_freedom_level(tmp_path, image_factory, monkeypatch):
    reference = image_factory(tmp_path / "scene.png")
    product = image_factory(tmp_path / "ring.png")
    prompt_file = _system_prompt(tmp_path)
    clients = _install_client(monkeypatch, script=[_plan_reply()])

    rc = cli.main(["analyze", str(reference), str(product), "--system-prompt-file", str(prompt_file),
                   "--freedom", "9", "--api-key", "k", "--out", str(tmp_path / "plan.json"), "--quiet"])
    assert rc == 0
    texts = [p["text"] for p in clients[0].calls[0]["parts"] if "text" in p]
    assert texts[-1] == "User Freedom Level (0-10): 9."


def test_analyze_permission_denied_exit_code(tmp_path, image_factory, monkeypatch, recorded_sleeps):
    reference = image_factory(tmp_path / "model.png")
    prompt_file = _system_prompt(tmp_path)
    clients = _install_client(monkeypatch, script=[RemoteServiceError(403, "denied", reason="PERMISSION_DENIED")])
    rc = cli.main(["analyze", str(reference), "--system-prompt-file", str(prompt_file), "--api-key", "k", "--quiet"])
    assert rc == 1
    assert len(clients[0].calls) == 1
    assert recorded_sleeps == []
