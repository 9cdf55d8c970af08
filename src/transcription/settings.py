"""Service settings and provider profiles.

Environment:
    TRANSCRIPTION_PROFILES_PATH: directory of provider profile YAML files
    TRANSCRIPTION_DEFAULT_PROFILE: profile used when a request carries no config
    TRANSCRIPTION_HTTP_TIMEOUT: per-request timeout for provider calls (seconds)

A profile is one YAML file named {profile}.yaml holding a TranscriptionConfig.
Secrets are normally left out of the file; the provider blocks fall back to
OPENAI_API_KEY / AZURE_SPEECH_KEY from the environment.
"""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml

from src.transcription.schemas import TranscriptionConfig

logger = logging.getLogger(__name__)

PROFILES_PATH = Path(
    os.environ.get("TRANSCRIPTION_PROFILES_PATH", str(Path(__file__).parent / "profiles"))
)
DEFAULT_PROFILE = os.environ.get("TRANSCRIPTION_DEFAULT_PROFILE", "")
HTTP_TIMEOUT_SECONDS = float(os.environ.get("TRANSCRIPTION_HTTP_TIMEOUT", "300"))


class ProfileRegistry:
    """Named provider configurations loaded from YAML files."""

    def __init__(self, profiles_dir: Optional[Path] = None, default_profile: Optional[str] = None):
        self.profiles_dir = Path(profiles_dir) if profiles_dir else PROFILES_PATH
        self.default_profile = DEFAULT_PROFILE if default_profile is None else default_profile
        self._profiles: dict[str, TranscriptionConfig] = {}
        self._loaded = False

    def load(self) -> None:
        """Load all profiles from YAML files."""
        if self._loaded:
            return

        if not self.profiles_dir.exists():
            logger.info(f"No profile directory at {self.profiles_dir}")
            self._loaded = True
            return

        for yaml_file in sorted(self.profiles_dir.glob("*.yaml")):
            try:
                with open(yaml_file, "r") as f:
                    data = yaml.safe_load(f)
                if data is None:
                    continue
                self._profiles[yaml_file.stem] = TranscriptionConfig.model_validate(data)
                logger.debug(f"Loaded profile: {yaml_file.stem}")
            except Exception as e:
                logger.error(f"Failed to load profile {yaml_file}: {e}")

        logger.info(f"Loaded {len(self._profiles)} transcription profiles from {self.profiles_dir}")
        self._loaded = True

    def get(self, name: str) -> Optional[TranscriptionConfig]:
        self.load()
        profile = self._profiles.get(name)
        return profile.model_copy(deep=True) if profile else None

    def get_default(self) -> Optional[TranscriptionConfig]:
        """The configured default profile, or None when unset or unknown."""
        if not self.default_profile:
            return None
        profile = self.get(self.default_profile)
        if profile is None:
            logger.warning(f"Default profile '{self.default_profile}' not found in {self.profiles_dir}")
        return profile

    def get_keys(self) -> list[str]:
        self.load()
        return sorted(self._profiles.keys())

    def count(self) -> int:
        self.load()
        return len(self._profiles)


_registry: Optional[ProfileRegistry] = None


def get_profile_registry() -> ProfileRegistry:
    """Get the global profile registry instance."""
    global _registry
    if _registry is None:
        _registry = ProfileRegistry()
    return _registry
