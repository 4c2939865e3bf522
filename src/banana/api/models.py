"""Pydantic request models for the Banana API.

The browser speaks camelCase JSON; fields are declared in snake_case with
camelCase aliases.  Most fields are optional with empty defaults so that the
core can answer missing values with its own, specific validation messages
instead of a generic schema error.

Models
------
CredentialsRequest
    ``POST /api/auth/register`` and ``POST /api/auth/login``.
SaveImageRequest / SaveBatchRequest
    ``POST /api/images/save`` and ``POST /api/images/save-batch``.
ThumbRequest
    ``POST /api/images/thumb``.
DeleteImageRequest / ClearImagesRequest / FetchImageRequest
    Remaining image-library mutations.
AddFavoriteRequest
    ``POST /api/favorites/add`` -- the item is an arbitrary JSON value.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CredentialsRequest(_CamelModel):
    username: Any = Field(default="", description="3-32 letters, digits, '_' or '-'.")
    password: Any = Field(default="", description="At least 6 characters.")


class ImagePayload(_CamelModel):
    data_url: str | None = Field(default=None, alias="dataUrl")
    thumb_data_url: str | None = Field(default=None, alias="thumbDataUrl")


class SaveImageRequest(ImagePayload):
    kind: str = Field(default="", description="'uploads' or 'generated'.")


class SaveBatchRequest(_CamelModel):
    kind: str = Field(default="", description="'uploads' or 'generated'.")
    images: list[Any] = Field(default_factory=list)


class ThumbRequest(_CamelModel):
    kind: str = ""
    original_file_uri: str = Field(default="", alias="originalFileUri")
    thumb_data_url: str | None = Field(default=None, alias="thumbDataUrl")


class DeleteImageRequest(_CamelModel):
    file_uri: str = Field(default="", alias="fileUri")


class ClearImagesRequest(_CamelModel):
    kind: str = Field(default="", description="'uploads', 'generated' or 'all'.")


class FetchImageRequest(_CamelModel):
    kind: str = Field(default="", description="Only 'generated' is accepted.")
    url: str = ""


class AddFavoriteRequest(_CamelModel):
    type: str = Field(default="", description="'presets', 'chats' or 'collections'.")
    item: Any = Field(default=None, description="Arbitrary JSON object or array.")
