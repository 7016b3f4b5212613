from pathlib import Path

import pytest
from pydantic import ValidationError

import memory_engine.config as config_module
from memory_engine.config import Config


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("embeddings:\n  provider: ollama\n  model: nomic-embed-text\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "memory-engine.yaml"
    local_cfg.write_text(
        (
            "embeddings:\n"
            "  provider: litellm\n"
            "  model: openai/text-embedding-3-large\n"
            "chunking:\n"
            "  tokens: 200\n"
            "  overlap: 20\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.embeddings.provider == "litellm"
    assert cfg.embeddings.model == "openai/text-embedding-3-large"
    assert cfg.chunking.tokens == 200
    assert cfg.chunking.overlap == 20


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text(
        (
            "search:\n"
            "  max_results: 8\n"
            "  min_score: 0.25\n"
            "store:\n"
            "  fts_enabled: false\n"
        ),
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.search.max_results == 8
    assert cfg.search.min_score == 0.25
    assert cfg.store.fts_enabled is False
    assert cfg.search.candidate_limit == 32


def test_missing_config_file_yields_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")

    cfg = Config.load()

    assert cfg.chunking.tokens == 400
    assert cfg.chunking.overlap == 80
    assert cfg.search.vector_weight == 0.7
    assert cfg.search.text_weight == 0.3
    assert cfg.recall.dedup_min_score == 0.92


def test_environment_overrides_nested_fields(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setenv("MEMORY_ENGINE_EMBEDDINGS__PROVIDER", "local_hash")
    monkeypatch.setenv("MEMORY_ENGINE_SEARCH__MAX_RESULTS", "12")

    cfg = Config.load()

    assert cfg.embeddings.provider == "local_hash"
    assert cfg.search.max_results == 12


def test_save_and_reload_round_trip(tmp_path: Path):
    path = tmp_path / "saved" / "config.yaml"
    cfg = Config(corpus={"path": str(tmp_path / "memory")}, search={"min_score": 0.4})

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.corpus.path == str(tmp_path / "memory")
    assert loaded.search.min_score == 0.4
    assert loaded.resolved_corpus_path() == tmp_path / "memory"


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        Config(chunking={"tokens": 0})
    with pytest.raises(ValidationError):
        Config(embeddings={"provider": "carrier-pigeon"})
