import time
import logging
from typing import Any, Dict, List, Optional

lib_logger = logging.getLogger("gemini_relay")


class ModelTiers:
    """
    The primary / fallback model pair plus any extra models advertised on /v1/models.

    Requests naming an unknown model are served by the primary tier.
    """

    def __init__(
        self,
        primary: str,
        fallback: str,
        extra_models: Optional[List[str]] = None,
    ):
        self.primary = primary
        self.fallback = fallback
        self.extra_models = [
            m for m in (extra_models or []) if m not in (primary, fallback)
        ]
        if primary == fallback:
            lib_logger.warning(
                f"Primary and fallback model are both '{primary}'; quota fallback is disabled."
            )

    @classmethod
    def from_settings(cls, settings) -> "ModelTiers":
        return cls(settings.primary_model, settings.fallback_model, settings.extra_models)

    def all_models(self) -> List[str]:
        models = [self.primary]
        if self.fallback != self.primary:
            models.append(self.fallback)
        return models + self.extra_models

    def resolve(self, requested: Optional[str]) -> str:
        """Maps a requested model id onto one we serve."""
        if not requested:
            return self.primary
        name = requested.split("/")[-1]
        if name in self.all_models():
            return name
        lib_logger.debug(
            f"Unknown model '{requested}' requested, using primary model '{self.primary}'"
        )
        return self.primary

    def is_primary(self, model: str) -> bool:
        return model == self.primary and self.fallback != self.primary

    def model_cards(self) -> List[Dict[str, Any]]:
        created = int(time.time())
        return [
            {"id": model_id, "object": "model", "created": created, "owned_by": "google"}
            for model_id in self.all_models()
        ]
