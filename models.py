import base64
from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    RootModel,
    model_validator,
    field_validator,
)
from enum import StrEnum


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"
    V1BETA1 = "admission.k8s.io/v1beta1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    REPLACE = "replace"
    ADD = "add"
    REMOVE = "remove"


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: Any


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#toleration-v1-core
class Toleration(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str = ""
    value: str = ""
    effect: str = ""


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool = False
    status: AdmissionReviewStatus | None = None
    uid: str | None = None
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json().encode()).decode()
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")
        if self.patch and not self.allowed:
            raise ValueError("a patch can only be returned when allowed is true")

        return self


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#groupversionkind-v1-meta
class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#userinfo-v1-authentication-k8s-io
class UserInfo(BaseModel):
    username: str | None = None
    uid: str | None = None
    groups: list[str] = []


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: str
    kind: GroupVersionKind | None = None
    namespace: str | None = None
    name: str | None = None
    operation: Operation = Operation.CREATE
    userInfo: UserInfo | None = None
    object: dict[str, Any] | None = None


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: ApiVersion = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None

    @model_validator(mode="after")
    def validate_model(self):
        if not (self.request or self.response):
            raise ValueError("must contain a request or a response")

        return self


class Metadata(BaseModel):
    name: str | None = None
    namespace: str | None = None
    labels: dict[str, str] = {}

    @field_validator("labels", mode="before")
    @classmethod
    def validate_labels(cls, val):
        if val is None:
            return {}
        if isinstance(val, dict):
            # A null label value reads as an empty string.
            return {k: "" if v is None else v for k, v in val.items()}
        return val


class PodSpec(BaseModel):
    tolerations: list[Toleration] = []

    @field_validator("tolerations", mode="before")
    @classmethod
    def validate_tolerations(cls, val):
        return [] if val is None else val


class Pod(BaseModel):
    """The subset of a Pod that the webhook inspects. Everything else in the
    resource body is ignored."""

    metadata: Metadata = Metadata()
    spec: PodSpec = PodSpec()

    @field_validator("metadata", mode="before")
    @classmethod
    def validate_metadata(cls, val):
        return Metadata() if val is None else val

    @field_validator("spec", mode="before")
    @classmethod
    def validate_spec(cls, val):
        return PodSpec() if val is None else val


class InjectorConfig(BaseModel):
    """Process-wide settings, built once by the application factory."""

    model_config = ConfigDict(frozen=True)

    match_label_key: str = ""
    match_label_value: str = ""
    toleration: Toleration = Toleration()
    ignored_namespaces: frozenset[str] = frozenset()
