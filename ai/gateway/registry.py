"""Model registry holding the descriptors of every callable model."""
from typing import Dict, Iterable, List, Optional

from ai.gateway.models import ModelDescriptor
from core.config import ModelsConfig
from core.errors import ModelNotFoundError, NoModelsAvailableError
from core.logging import logger


class ModelRegistry:
    """Read-mostly registry of model descriptors.

    Descriptors are frozen.  Administrative writes build new descriptor
    instances and swap a fresh mapping in, so a request that already holds a
    descriptor never sees it change underneath it.
    """

    def __init__(self, descriptors: Optional[Iterable[ModelDescriptor]] = None):
        self._models: Dict[str, ModelDescriptor] = {}
        if descriptors is not None:
            self.refresh(descriptors)

    @classmethod
    def from_config(cls, config: ModelsConfig) -> "ModelRegistry":
        """Build a registry from the YAML model configuration."""
        descriptors = [
            ModelDescriptor(
                id=entry.id,
                provider=entry.provider,
                name=entry.name or entry.id,
                priority=entry.priority,
                is_available=entry.is_available,
                is_default=entry.id == config.default_model,
                context_window=entry.context_window,
                max_tokens=entry.max_tokens,
                capabilities=frozenset(entry.capabilities),
            )
            for entry in config.models
        ]
        return cls(descriptors)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def get(self, model_id: str) -> ModelDescriptor:
        """
        Get a model descriptor by id.

        Raises:
            ModelNotFoundError: if the id is unknown
        """
        model = self._models.get(model_id)
        if model is None:
            raise ModelNotFoundError(f"Model not found: {model_id}")
        return model

    def list_all(self) -> List[ModelDescriptor]:
        return sorted(self._models.values(), key=lambda m: m.priority, reverse=True)

    def list_available(self) -> List[ModelDescriptor]:
        """Available models ordered by priority, highest first."""
        return [m for m in self.list_all() if m.is_available]

    def get_default(self) -> ModelDescriptor:
        """
        Return the model flagged default, or the first available one.

        Raises:
            NoModelsAvailableError: if no model is available
        """
        available = self.list_available()
        if not available:
            raise NoModelsAvailableError("No models available")
        for model in available:
            if model.is_default:
                return model
        return available[0]

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)

    # ------------------------------------------------------------------
    # Administrative writes
    # ------------------------------------------------------------------

    def refresh(self, descriptors: Iterable[ModelDescriptor]) -> None:
        """Replace the whole registry content in one swap."""
        models = {d.id: d for d in descriptors}
        defaults = [d.id for d in models.values() if d.is_default]
        if len(defaults) > 1:
            # Keep only the first flagged default.
            for model_id in defaults[1:]:
                models[model_id] = models[model_id].model_copy(update={"is_default": False})
        self._models = models
        logger.info(f"Model registry refreshed with {len(models)} models")

    def set_default(self, model_id: str) -> ModelDescriptor:
        target = self.get(model_id)
        models = {
            mid: (m.model_copy(update={"is_default": False}) if m.is_default else m)
            for mid, m in self._models.items()
        }
        models[model_id] = target.model_copy(update={"is_default": True})
        self._models = models
        logger.info(f"Default model set to '{model_id}'")
        return models[model_id]

    def enable(self, model_id: str) -> ModelDescriptor:
        return self._set_available(model_id, True)

    def disable(self, model_id: str) -> ModelDescriptor:
        return self._set_available(model_id, False)

    def _set_available(self, model_id: str, available: bool) -> ModelDescriptor:
        updated = self.get(model_id).model_copy(update={"is_available": available})
        models = dict(self._models)
        models[model_id] = updated
        self._models = models
        logger.info(f"Model '{model_id}' {'enabled' if available else 'disabled'}")
        return updated
