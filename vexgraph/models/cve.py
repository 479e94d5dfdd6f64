"""Typed view of a CVE JSON 5 record."""
from datetime import datetime

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


class CveModel(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)


class CveMetadata(CveModel):
    cve_id: str = Field(alias='cveId')
    state: str = 'PUBLISHED'
    date_published: datetime | None = Field(alias='datePublished', default=None)
    date_updated: datetime | None = Field(alias='dateUpdated', default=None)
    date_rejected: datetime | None = Field(alias='dateRejected', default=None)


class AffectedVersion(CveModel):
    version: str
    status: str = 'affected'
    version_type: str | None = Field(alias='versionType', default=None)
    less_than: str | None = Field(alias='lessThan', default=None)
    less_than_or_equal: str | None = Field(alias='lessThanOrEqual', default=None)


class AffectedProduct(CveModel):
    vendor: str | None = None
    product: str | None = None
    collection_url: str | None = Field(alias='collectionURL', default=None)
    package_name: str | None = Field(alias='packageName', default=None)
    cpes: list[str] = Field(default_factory=list)
    versions: list[AffectedVersion] = Field(default_factory=list)
    default_status: str | None = Field(alias='defaultStatus', default=None)


class Description(CveModel):
    lang: str = 'en'
    value: str = ''


class ProblemTypeDescription(CveModel):
    lang: str = 'en'
    description: str = ''
    cwe_id: str | None = Field(alias='cweId', default=None)


class ProblemType(CveModel):
    descriptions: list[ProblemTypeDescription] = Field(default_factory=list)


class CnaContainer(CveModel):
    title: str | None = None
    descriptions: list[Description] = Field(default_factory=list)
    rejected_reasons: list[Description] = Field(alias='rejectedReasons', default_factory=list)
    problem_types: list[ProblemType] = Field(alias='problemTypes', default_factory=list)
    affected: list[AffectedProduct] = Field(default_factory=list)
    metrics: list[dict] = Field(default_factory=list)


class Containers(CveModel):
    cna: CnaContainer = Field(default_factory=CnaContainer)


class CveRecord(CveModel):
    data_type: str = Field(alias='dataType', default='CVE_RECORD')
    metadata: CveMetadata = Field(alias='cveMetadata')
    containers: Containers = Field(default_factory=Containers)

    @property
    def cve_id(self) -> str:
        return self.metadata.cve_id

    @property
    def rejected(self) -> bool:
        return self.metadata.state.upper() == 'REJECTED'

    @property
    def descriptions(self) -> list[Description]:
        """Rejected records carry their reasons in place of descriptions."""
        cna = self.containers.cna
        return cna.rejected_reasons if self.rejected else cna.descriptions

    @property
    def cwe(self) -> str | None:
        for problem_type in self.containers.cna.problem_types:
            for description in problem_type.descriptions:
                if description.cwe_id:
                    return description.cwe_id
        return None

    @property
    def title(self) -> str | None:
        cna = self.containers.cna
        if cna.title:
            return cna.title
        for description in self.descriptions:
            if description.lang.lower().startswith('en') and description.value:
                return description.value
        return None
