"""Typed view of an SPDX 2.x JSON document."""
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator


class SpdxModel(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)


class ExternalRef(SpdxModel):
    reference_category: str = Field(alias='referenceCategory', default='')
    reference_type: str = Field(alias='referenceType')
    reference_locator: str = Field(alias='referenceLocator')


class SpdxPackage(SpdxModel):
    spdx_id: str = Field(alias='SPDXID')
    name: str
    version_info: str | None = Field(alias='versionInfo', default=None)
    supplier: str | None = None
    external_refs: list[ExternalRef] = Field(alias='externalRefs', default_factory=list)

    @field_validator('version_info', mode='before')
    @classmethod
    def drop_noassertion(cls, v: Any) -> str | None:
        if v in (None, '', 'NOASSERTION', 'NONE'):
            return None
        return str(v)


class SpdxRelationship(SpdxModel):
    spdx_element_id: str = Field(alias='spdxElementId')
    relationship_type: str = Field(alias='relationshipType')
    related_spdx_element: str = Field(alias='relatedSpdxElement')


class CreationInfo(SpdxModel):
    created: datetime | None = None
    creators: list[str] = Field(default_factory=list)


class SpdxDocument(SpdxModel):
    spdx_id: str = Field(alias='SPDXID', default='SPDXRef-DOCUMENT')
    spdx_version: str = Field(alias='spdxVersion', default='SPDX-2.3')
    name: str = ''
    document_namespace: str | None = Field(alias='documentNamespace', default=None)
    creation_info: CreationInfo | None = Field(alias='creationInfo', default=None)
    document_describes: list[str] = Field(alias='documentDescribes', default_factory=list)
    packages: list[SpdxPackage] = Field(default_factory=list)
    relationships: list[SpdxRelationship] = Field(default_factory=list)

    @property
    def document_id(self) -> str:
        """The namespace is the document's globally unique name."""
        return self.document_namespace or f"{self.name}#{self.spdx_id}"
