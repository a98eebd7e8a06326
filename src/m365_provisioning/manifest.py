"""Desired-state manifest describing what a provisioning run should converge to."""
from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional, Union
from xml.sax.saxutils import escape, quoteattr

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import SecretRef


class UserSpec(BaseModel):
    user_principal_name: str
    display_name: str
    mail_nickname: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    usage_location: Optional[str] = Field(default=None, min_length=2, max_length=2)
    account_enabled: bool = True
    password: Optional[SecretRef] = Field(
        default=None, description="Initial password, only read when the user has to be created"
    )
    force_change_password_next_sign_in: bool = True

    model_config = ConfigDict(extra="forbid")

    @field_validator("user_principal_name")
    @classmethod
    def validate_upn(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError(f"{value!r} is not a user principal name")
        return value

    @property
    def nickname(self) -> str:
        return self.mail_nickname or self.user_principal_name.split("@", 1)[0]

    def graph_properties(self) -> dict:
        """Properties reconciled on every run, keyed by their Graph names."""
        return {
            "displayName": self.display_name,
            "givenName": self.given_name,
            "surname": self.surname,
            "jobTitle": self.job_title,
            "department": self.department,
            "usageLocation": self.usage_location,
            "accountEnabled": self.account_enabled,
        }


class GroupKind(str, Enum):
    SECURITY = "security"
    MICROSOFT_365 = "microsoft365"


class GroupSpec(BaseModel):
    display_name: str
    mail_nickname: str
    description: Optional[str] = None
    kind: GroupKind = GroupKind.SECURITY
    members: List[str] = Field(default_factory=list, description="Member UPNs")
    owners: List[str] = Field(default_factory=list, description="Owner UPNs")

    model_config = ConfigDict(extra="forbid")

    @field_validator("mail_nickname")
    @classmethod
    def validate_nickname(cls, value: str) -> str:
        if not value or any(char.isspace() for char in value) or "@" in value:
            raise ValueError("mail_nickname must be non-empty without spaces or '@'")
        return value

    def graph_properties(self) -> dict:
        return {"displayName": self.display_name, "description": self.description}


class FieldType(str, Enum):
    TEXT = "Text"
    NOTE = "Note"
    NUMBER = "Number"
    CURRENCY = "Currency"
    DATETIME = "DateTime"
    BOOLEAN = "Boolean"
    CHOICE = "Choice"
    MULTI_CHOICE = "MultiChoice"
    USER = "User"
    URL = "URL"


class SiteColumnSpec(BaseModel):
    internal_name: str
    display_name: str
    field_type: FieldType = FieldType.TEXT
    group: str = "Custom Columns"
    description: Optional[str] = None
    required: bool = False
    choices: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @field_validator("internal_name")
    @classmethod
    def validate_internal_name(cls, value: str) -> str:
        if not value or not value.replace("_", "").isalnum() or value[0].isdigit():
            raise ValueError(f"{value!r} is not a valid SharePoint internal name")
        return value

    @model_validator(mode="after")
    def check_choices(self) -> "SiteColumnSpec":
        is_choice = self.field_type in (FieldType.CHOICE, FieldType.MULTI_CHOICE)
        if is_choice and not self.choices:
            raise ValueError(f"Column {self.internal_name} needs at least one choice")
        if self.choices and not is_choice:
            raise ValueError(f"Column {self.internal_name} is not a choice column")
        return self

    def schema_xml(self) -> str:
        attributes = {
            "Type": self.field_type.value,
            "Name": self.internal_name,
            "StaticName": self.internal_name,
            "DisplayName": self.display_name,
            "Group": self.group,
            "Required": "TRUE" if self.required else "FALSE",
        }
        if self.description:
            attributes["Description"] = self.description
        if self.field_type == FieldType.USER:
            attributes["UserSelectionMode"] = "PeopleOnly"
        if self.field_type == FieldType.DATETIME:
            attributes["Format"] = "DateOnly"
        rendered = " ".join(f"{key}={quoteattr(value)}" for key, value in attributes.items())
        if not self.choices:
            return f"<Field {rendered} />"
        choices = "".join(f"<CHOICE>{escape(choice)}</CHOICE>" for choice in self.choices)
        return f"<Field {rendered}><CHOICES>{choices}</CHOICES></Field>"

    def rest_properties(self) -> dict:
        return {
            "Title": self.display_name,
            "Group": self.group,
            "Description": self.description,
            "Required": self.required,
        }


class ContentTypeSpec(BaseModel):
    name: str
    content_type_id: str = Field(description="Full id, e.g. 0x0101 followed by a unique suffix")
    group: str = "Custom Content Types"
    description: Optional[str] = None
    fields: List[str] = Field(default_factory=list, description="Site column internal names")

    model_config = ConfigDict(extra="forbid")

    @field_validator("content_type_id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        value = value.upper().replace("0X", "0x", 1)
        if not value.startswith("0x") or len(value) < 4:
            raise ValueError(f"{value!r} is not a content type id")
        try:
            int(value[2:], 16)
        except ValueError as exc:
            raise ValueError(f"{value!r} is not a hexadecimal content type id") from exc
        return value

    def rest_properties(self) -> dict:
        return {"Name": self.name, "Group": self.group, "Description": self.description}


class LibrarySpec(BaseModel):
    title: str
    description: Optional[str] = None
    enable_versioning: bool = True
    content_types: List[str] = Field(default_factory=list, description="Content type names")

    model_config = ConfigDict(extra="forbid")

    def rest_properties(self) -> dict:
        return {
            "Description": self.description,
            "EnableVersioning": self.enable_versioning,
            "ContentTypesEnabled": True if self.content_types else None,
        }


class SiteGroupSpec(BaseModel):
    title: str
    description: Optional[str] = None
    members: List[str] = Field(default_factory=list, description="Member UPNs")

    model_config = ConfigDict(extra="forbid")


class PermissionSpec(BaseModel):
    principal: str = Field(description="SharePoint site group title")
    role: str = Field(description="Permission level, e.g. Read, Contribute, Edit, Full Control")
    library: Optional[str] = Field(default=None, description="Library title; the web when omitted")
    break_inheritance: bool = True
    copy_role_assignments: bool = True

    model_config = ConfigDict(extra="forbid")

    @property
    def scope_name(self) -> str:
        return self.library or "web"


class SharePointSpec(BaseModel):
    site_url: Optional[str] = Field(default=None, description="Overrides the tenant's site_url")
    columns: List[SiteColumnSpec] = Field(default_factory=list)
    content_types: List[ContentTypeSpec] = Field(default_factory=list)
    libraries: List[LibrarySpec] = Field(default_factory=list)
    site_groups: List[SiteGroupSpec] = Field(default_factory=list)
    permissions: List[PermissionSpec] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def check_references(self) -> "SharePointSpec":
        libraries = {library.title for library in self.libraries}
        for permission in self.permissions:
            if permission.library and permission.library not in libraries:
                raise ValueError(
                    f"Permission for {permission.principal} targets undeclared library {permission.library}"
                )
        return self


class PublisherSpec(BaseModel):
    unique_name: str
    friendly_name: str
    prefix: str = Field(min_length=2, max_length=8)
    option_value_prefix: int = Field(default=10000, ge=10000, le=99999)
    description: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, value: str) -> str:
        if not value.isalnum() or not value[0].isalpha() or value.lower().startswith("mscrm"):
            raise ValueError(f"{value!r} is not a valid customization prefix")
        return value.lower()

    def dataverse_properties(self) -> dict:
        return {"friendlyname": self.friendly_name, "description": self.description}


class SolutionSpec(BaseModel):
    unique_name: str
    friendly_name: str
    version: str = "1.0.0.0"
    description: Optional[str] = None
    flows: List[str] = Field(default_factory=list, description="Workflow ids to include")

    model_config = ConfigDict(extra="forbid")

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        parts = value.split(".")
        if not 2 <= len(parts) <= 4 or not all(part.isdigit() for part in parts):
            raise ValueError(f"{value!r} is not a solution version (major.minor[.build[.revision]])")
        return value

    def dataverse_properties(self) -> dict:
        return {
            "friendlyname": self.friendly_name,
            "version": self.version,
            "description": self.description,
        }


class PowerPlatformSpec(BaseModel):
    publisher: Optional[PublisherSpec] = None
    solutions: List[SolutionSpec] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def require_publisher(self) -> "PowerPlatformSpec":
        if self.solutions and self.publisher is None:
            raise ValueError("Solutions need a publisher")
        return self


class ProvisioningManifest(BaseModel):
    users: List[UserSpec] = Field(default_factory=list)
    groups: List[GroupSpec] = Field(default_factory=list)
    sharepoint: Optional[SharePointSpec] = None
    power_platform: Optional[PowerPlatformSpec] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def check_unique_names(self) -> "ProvisioningManifest":
        _reject_duplicates("user", [user.user_principal_name.lower() for user in self.users])
        _reject_duplicates("group", [group.mail_nickname.lower() for group in self.groups])
        if self.sharepoint:
            _reject_duplicates("column", [column.internal_name for column in self.sharepoint.columns])
            _reject_duplicates("content type", [ct.name for ct in self.sharepoint.content_types])
            _reject_duplicates("library", [library.title for library in self.sharepoint.libraries])
            _reject_duplicates("site group", [group.title for group in self.sharepoint.site_groups])
        return self

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ProvisioningManifest":
        manifest_path = Path(path)
        if not manifest_path.exists():
            raise FileNotFoundError(f"Manifest file not found: {manifest_path}")

        with manifest_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

        return cls(**raw)


def _reject_duplicates(kind: str, names: List[str]) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ValueError(f"Duplicate {kind} {name!r} in manifest")
        seen.add(name)
