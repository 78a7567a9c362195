"""
Typed records for Microsoft Graph directory payloads.

Graph responses are validated into these models at the client boundary;
nothing downstream sees the raw JSON. Unknown keys are ignored and every
profile attribute is optional. Date-ish attributes are kept as the raw
strings Graph sent; the resolvers parse them leniently so a
malformed value drops that one field instead of the whole record.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

GRAPH_USER_TYPE = "#microsoft.graph.user"


class _GraphRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class RemoteGroup(_GraphRecord):
    external_id: str = Field(alias="id", min_length=1)
    display_name: str = Field(alias="displayName")
    description: str | None = None


class RemoteManager(_GraphRecord):
    external_id: str = Field(alias="id", min_length=1)
    display_name: str | None = Field(default=None, alias="displayName")
    email: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _resolve_email(cls, data: Any) -> Any:
        if isinstance(data, dict) and "email" not in data:
            data = {**data, "email": data.get("mail") or data.get("userPrincipalName")}
        return data


class RemoteUser(_GraphRecord):
    external_id: str = Field(alias="id", min_length=1)
    display_name: str | None = Field(default=None, alias="displayName")
    # `mail` when set, else the user principal name
    email: str = Field(min_length=3)
    given_name: str | None = Field(default=None, alias="givenName")
    surname: str | None = None
    account_enabled: bool | None = Field(default=None, alias="accountEnabled")
    job_title: str | None = Field(default=None, alias="jobTitle")
    department: str | None = None
    office_location: str | None = Field(default=None, alias="officeLocation")
    mobile_phone: str | None = Field(default=None, alias="mobilePhone")
    hire_date: str | None = Field(default=None, alias="employeeHireDate")
    leave_date_time: str | None = Field(default=None, alias="employeeLeaveDateTime")
    created_at: str | None = Field(default=None, alias="createdDateTime")
    manager: RemoteManager | None = None
    last_sign_in_at: str | None = Field(default=None, alias="lastSignInDateTime")
    last_password_change_at: str | None = Field(
        default=None, alias="lastPasswordChangeDateTime"
    )

    @model_validator(mode="before")
    @classmethod
    def _resolve_email(cls, data: Any) -> Any:
        if isinstance(data, dict) and "email" not in data:
            email = data.get("mail") or data.get("userPrincipalName")
            data = {**data, "email": email.strip() if isinstance(email, str) else email}
        return data

    def graph_value(self, graph_field: str) -> Any:
        """Attribute value by its Graph property name (e.g. ``jobTitle``)."""
        for attr, info in type(self).model_fields.items():
            if graph_field in (info.alias, attr):
                return getattr(self, attr)
        return None


def is_user_entry(entry: dict[str, Any]) -> bool:
    return entry.get("@odata.type") == GRAPH_USER_TYPE
