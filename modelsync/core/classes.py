from pydantic import BaseModel, ConfigDict, Field


class ModelClass(BaseModel):
    """
    Descriptor identifying one remote model on one backend.

    Attributes:
        model_name: The backend model name, e.g. "django_app.dummymodel"
        config_key: The backend this model belongs to
        primary_key_field: The field holding the primary key on every entity
    """

    model_config = ConfigDict(frozen=True)

    model_name: str = Field(min_length=1)
    config_key: str = Field(min_length=1)
    primary_key_field: str = "id"

    @property
    def store_key(self) -> str:
        """Key prefix used for persisted blobs."""
        return f"{self.model_name}::{self.config_key}"

    @property
    def registry_key(self) -> str:
        """Key used by the process wide registries."""
        return f"{self.config_key}::{self.model_name}"

    def __str__(self) -> str:
        return self.model_name
