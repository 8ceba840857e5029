from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from headless_npc.characters import CharacterService  # noqa: E402
from headless_npc.errors import CharacterNotFoundError, ConfigurationError  # noqa: E402


CHARACTERS_DIR = PROJECT_ROOT / "headless_npc" / "characters" / "data"


def _minimal(character_id: str) -> dict[str, object]:
    return {
        "id": character_id,
        "name": character_id.title(),
        "default_greeting": "hello",
        "default_state": {"stress": 10, "trust": 20},
        "languages": ["en-US", "zh_CN"],
    }


def test_bundled_mob_profile_loads() -> None:
    service = CharacterService(CHARACTERS_DIR)
    mob = service.get_or_raise("mob")

    assert mob.name == "Shigeo Kageyama"
    assert mob.persona_id == "mob-kageyama"
    assert mob.date_of_birth == "2002-01-01"
    assert mob.default_state.mode == "NORMAL"
    assert mob.default_persona_runtime()["stress_meter"]["current_level"] == 0


def test_summary_is_localized_with_english_fallback() -> None:
    service = CharacterService(CHARACTERS_DIR)

    zh = next(item for item in service.list_characters("zh-CN") if item["id"] == "mob")
    en = next(item for item in service.list_characters("fr") if item["id"] == "mob")

    assert zh["display"]["title"] == "灵能咨询所"
    assert zh["display"]["statusLine"]["broken"] == "100% 爆发"
    assert en["display"]["title"] == "Spirits and Such Consultation Office"
    assert zh["languages"] == ["en", "zh"]


def test_bad_files_are_skipped(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    (tmp_path / "good.json").write_text(json.dumps(_minimal("good")), encoding="utf-8")
    (tmp_path / "broken.json").write_text("{ nope", encoding="utf-8")
    (tmp_path / "incomplete.json").write_text(json.dumps({"id": "x"}), encoding="utf-8")

    with caplog.at_level("WARNING", logger="headless_npc.characters"):
        service = CharacterService(tmp_path)

    assert [item["id"] for item in service.list_characters()] == ["good"]
    assert service.get_or_raise("good").summary()["languages"] == ["en-us", "zh-cn"]
    assert "broken.json" in caplog.text
    assert "incomplete.json" in caplog.text


def test_bom_prefixed_json_is_accepted(tmp_path: Path) -> None:
    payload = json.dumps(_minimal("bom"), ensure_ascii=False).encode("utf-8")
    (tmp_path / "bom.json").write_bytes(b"\xef\xbb\xbf" + payload)

    assert CharacterService(tmp_path).get("bom") is not None


def test_empty_directory_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        CharacterService(tmp_path)


def test_unknown_character_raises() -> None:
    service = CharacterService(CHARACTERS_DIR)

    with pytest.raises(CharacterNotFoundError) as exc_info:
        service.get_or_raise("nobody")
    assert exc_info.value.character_id == "nobody"
