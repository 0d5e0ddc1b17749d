"""Tests for runtime Modelfile synthesis."""

from __future__ import annotations

from pathlib import Path

import pytest

from modelferry.core import modelfile
from modelferry.core.detect import DetectedModelType
from modelferry.core.errors import ModelfileError


def test_full_model_points_at_safetensors_directory(tmp_path: Path) -> None:
    extracted = tmp_path / "models" / "abc"
    shards = extracted / "export" / "weights"
    shards.mkdir(parents=True)
    (shards / "model-00001-of-00002.safetensors").write_bytes(b"a")
    (shards / "model-00002-of-00002.safetensors").write_bytes(b"b")
    (extracted / "export" / "config.json").write_text("{}", encoding="utf-8")

    path = modelfile.build(
        DetectedModelType.full(extracted),
        extracted,
        None,
        tmp_path / "models" / "abc_modelfile",
    )

    assert path == tmp_path / "models" / "abc_modelfile" / "Modelfile"
    assert path.read_text(encoding="utf-8") == f"FROM {shards}\n"
    assert not path.with_suffix(".tmp").exists()


def test_full_model_with_single_gguf_uses_payload_root(tmp_path: Path) -> None:
    extracted = tmp_path / "extracted"
    extracted.mkdir()
    (extracted / "model.gguf").write_bytes(b"gguf")

    assert modelfile.locate_weights(extracted) == extracted


def test_full_model_without_weights_still_writes_modelfile(tmp_path: Path) -> None:
    extracted = tmp_path / "extracted"
    extracted.mkdir()
    (extracted / "README.md").write_text("no weights here", encoding="utf-8")

    path = modelfile.build(DetectedModelType.full(extracted), extracted, None, tmp_path / "out")

    assert modelfile.parse_modelfile(path.read_text(encoding="utf-8")) == {
        "FROM": str(extracted)
    }


def test_adapter_modelfile_references_base_and_adapter(tmp_path: Path) -> None:
    base = tmp_path / "base_models" / "base-7b"
    base_payload = base / "base-7b"
    base_payload.mkdir(parents=True)
    (base_payload / "config.json").write_text('{"arch": "llama"}', encoding="utf-8")
    adapter = tmp_path / "models" / "abc"
    adapter.mkdir(parents=True)
    (adapter / "adapter_config.json").write_text("{}", encoding="utf-8")

    path = modelfile.build(
        DetectedModelType.delta(adapter, "base-7b"),
        base,
        adapter,
        tmp_path / "models" / "abc_modelfile",
    )

    assert modelfile.parse_modelfile(path.read_text(encoding="utf-8")) == {
        "FROM": str(base_payload),
        "ADAPTER": str(adapter),
    }
    assert (adapter / "config.json").read_text(encoding="utf-8") == '{"arch": "llama"}'
    assert sorted(entry.name for entry in base_payload.iterdir()) == ["config.json"]


def test_adapter_metadata_is_not_overwritten(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    (base / "config.json").write_text("base", encoding="utf-8")
    adapter = tmp_path / "adapter"
    adapter.mkdir()
    (adapter / "config.json").write_text("adapter", encoding="utf-8")

    assert modelfile.ensure_adapter_metadata(base, adapter) is False
    assert (adapter / "config.json").read_text(encoding="utf-8") == "adapter"


def test_adapter_without_adapter_path_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ModelfileError):
        modelfile.build(
            DetectedModelType.delta(tmp_path, "base-7b"),
            tmp_path,
            None,
            tmp_path / "out",
        )


def test_parse_modelfile_ignores_comments_and_unknown_directives() -> None:
    text = "# generated\nFROM /models/base\nPARAMETER temperature 0.2\n\nadapter /models/lora\n"

    assert modelfile.parse_modelfile(text) == {
        "FROM": "/models/base",
        "ADAPTER": "/models/lora",
    }
