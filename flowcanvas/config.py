from __future__ import annotations

from configparser import ConfigParser
from pathlib import Path

import yaml

DEFAULT_LLM_INSTRUCTION = "Rewrite the input as a clear prompt for an AI generation model."


class AppConfig:
    def __init__(self, config_path: Path | None = None, prompts_path: Path | None = None) -> None:
        parser = ConfigParser()
        package_root = Path(__file__).resolve().parent.parent
        parser.read(config_path or package_root / "config.ini")
        if not parser.sections() and config_path is None:
            parser.read(Path("config.ini"))
        self._parser = parser
        self._prompts = self._load_prompts(prompts_path or package_root / "prompts.yaml")

    def executor_settings(self) -> dict[str, object]:
        return {
            "image_min_interval": self._get_float("executor", "image_min_interval", 3.0),
            "video_min_interval": self._get_float("executor", "video_min_interval", 5.0),
            "image_max_attempts": self._get_int("executor", "image_max_attempts", 3),
            "image_initial_delay": self._get_float("executor", "image_initial_delay", 1.0),
            "video_max_attempts": self._get_int("executor", "video_max_attempts", 2),
            "video_initial_delay": self._get_float("executor", "video_initial_delay", 2.0),
            "max_delay": self._get_float("executor", "max_delay", 10.0),
            "backoff_factor": self._get_float("executor", "backoff_factor", 2.0),
        }

    def history_settings(self) -> dict[str, object]:
        return {"max_size": self._get_int("history", "max_size", 20)}

    def layout_settings(self) -> dict[str, object]:
        return {
            "horizontal_gap": self._get_float("layout", "horizontal_gap", 80.0),
            "vertical_gap": self._get_float("layout", "vertical_gap", 50.0),
        }

    def storage_settings(self) -> dict[str, object]:
        return {
            "db_path": self._get_str("storage", "db_path", "data/flowcanvas.db"),
            "max_snapshots": self._get_int("storage", "max_snapshots", 3),
        }

    def llm_settings(self) -> dict[str, object]:
        return {
            "model": self._get_str("llm", "model", "qwen2.5:1.5b"),
            "num_ctx": self._get_int("llm", "num_ctx", 2048),
            "num_predict": self._get_int("llm", "num_predict", 256),
            "temperature": self._get_float("llm", "temperature", 0.7),
            "providers": self._get_csv("llm", "providers", ["mock"]),
        }

    def llm_instruction(self, mode: str) -> str:
        modes = self._prompts.get("llm_modes", {})
        if isinstance(modes, dict):
            text = modes.get(mode)
            if isinstance(text, str) and text.strip():
                return text.strip()
        return DEFAULT_LLM_INSTRUCTION

    def llm_style_hint(self, style: str) -> str:
        styles = self._prompts.get("llm_styles", {})
        if isinstance(styles, dict) and isinstance(styles.get(style), str):
            return styles[style].strip()
        return ""

    def llm_target_hint(self, target_use: str) -> str:
        targets = self._prompts.get("llm_targets", {})
        if isinstance(targets, dict) and isinstance(targets.get(target_use), str):
            return targets[target_use].strip()
        return ""

    def _get_str(self, section: str, key: str, fallback: str) -> str:
        return self._parser.get(section, key, fallback=fallback)

    def _get_int(self, section: str, key: str, fallback: int) -> int:
        return self._parser.getint(section, key, fallback=fallback)

    def _get_float(self, section: str, key: str, fallback: float) -> float:
        return self._parser.getfloat(section, key, fallback=fallback)

    def _get_csv(self, section: str, key: str, fallback: list[str]) -> list[str]:
        value = self._parser.get(section, key, fallback="")
        if not value:
            return list(fallback)
        return [part.strip() for part in value.split(",") if part.strip()]

    def _load_prompts(self, path: Path) -> dict[str, object]:
        if not path.exists():
            return {}
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError):
            return {}
        return raw if isinstance(raw, dict) else {}


app_config = AppConfig()
