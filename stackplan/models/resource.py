from dataclasses import dataclass, field
from typing import Any, Dict, List

from stackplan.expressions import iter_references


@dataclass
class ResourceSpec:
    resource_type: str     # e.g. "aws_s3_bucket", "AWS::S3::Bucket"
    name: str              # logical name in the declaration
    attributes: Dict[str, Any] = field(default_factory=dict)
    provider: str = "aws"  # provider handle, e.g. "aws" or the alias "aws.us_east_1"
    depends_on: List[str] = field(default_factory=list)
    protected: bool = False
    source_format: str = ""      # "terraform", "cloudformation"
    source_file: str = ""
    logical_id: str = ""         # CloudFormation addresses resources by bare logical id

    @property
    def address(self) -> str:
        return self.logical_id or f"{self.resource_type}.{self.name}"

    @property
    def references(self) -> List[str]:
        """Addresses referenced from attribute expressions, in first-seen order."""
        seen: List[str] = []
        for ref in iter_references(self.attributes):
            if ref.address not in seen:
                seen.append(ref.address)
        return seen

    @property
    def dependencies(self) -> List[str]:
        deps = list(self.references)
        for d in self.depends_on:
            if d not in deps:
                deps.append(d)
        return deps


@dataclass
class OutputSpec:
    name: str
    value: Any
    description: str = ""
    sensitive: bool = False
    source_file: str = ""

    @property
    def references(self) -> List[str]:
        return sorted({ref.address for ref in iter_references(self.value)})


@dataclass
class Declarations:
    """Everything parsed from a set of declaration files."""

    resources: List[ResourceSpec] = field(default_factory=list)
    outputs: List[OutputSpec] = field(default_factory=list)
    providers: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # handle -> options

    def extend(self, other: "Declarations") -> None:
        self.resources.extend(other.resources)
        self.outputs.extend(other.outputs)
        for name, options in other.providers.items():
            self.providers.setdefault(name, {}).update(options)
