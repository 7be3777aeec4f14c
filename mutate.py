import functools
import logging
import sys
from collections.abc import Mapping, Sequence

import pydantic
from pydantic_core import PydanticSerializationError, from_json

from flask import Flask, Response, request, current_app

from models import (
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReview,
    AdmissionReviewStatus,
    ApiVersion,
    InjectorConfig,
    Patch,
    PatchAction,
    PatchOp,
    PatchType,
    Pod,
    Toleration,
)

import registration
from exc import (
    ApplicationError,
    DecodeError,
    EncodeError,
    RegistrationError,
    UnmarshalError,
    UnsupportedContentType,
)

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

ACCEPTED_CONTENT_TYPE = "application/json"
TOLERATIONS_PATH = "/spec/tolerations"


class DEFAULTS:
    MATCH_LABEL_KEY = ""
    MATCH_LABEL_VALUE = ""
    TOLERATION_KEY = ""
    TOLERATION_VALUE = ""
    TOLERATION_EFFECT = ""
    IGNORED_NAMESPACES = ""
    LISTEN_ADDRESS = ":8080"
    TLS_CERT_FILE = None
    TLS_KEY_FILE = None
    REGISTER = False
    WEBHOOK_NAME = "toleration-injector.k8s.io"
    SERVICE_NAME = "toleration-injector"
    SERVICE_NAMESPACE = "default"
    SERVICE_PATH = "/mutate"
    CA_BUNDLE_FILE = None


def jsonresponse():
    """Serializes the AdmissionReview returned by a view function."""

    def _outer(func):
        @functools.wraps(func)
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            return Response(encode_review(res), mimetype=ACCEPTED_CONTENT_TYPE)

        return _inner

    return _outer


def json_patch_escape(val):
    return val.replace("~", "~0").replace("/", "~1")


def json_patch_unescape(val):
    return val.replace("~1", "/").replace("~0", "~")


def should_inject(config: InjectorConfig, labels: Mapping[str, str]) -> bool:
    """Return True if labels carry the configured key with the configured
    value. Matching is exact; an empty configured key only matches a label
    whose key is literally the empty string."""

    if config.match_label_key not in labels:
        return False

    return labels[config.match_label_key] == config.match_label_value


def build_patch(existing: Sequence[Toleration], to_add: Sequence[Toleration]) -> Patch:
    """Generate one JSON Patch "add" operation per toleration in to_add.

    Existing tolerations are not inspected, so running this against a pod
    that was already patched will add the same toleration again.
    """

    LOG.debug("pod has %d existing tolerations", len(existing))

    actions = []
    for toleration in to_add:
        LOG.debug("adding toleration %s", toleration)
        actions.append(
            PatchAction(
                op=PatchOp.ADD,
                path=TOLERATIONS_PATH,
                value=[toleration.model_dump(exclude_defaults=True)],
            )
        )

    return Patch(actions)


def decode_review(body: bytes, content_type: str | None) -> AdmissionReview:
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type != ACCEPTED_CONTENT_TYPE:
        raise UnsupportedContentType(f"unsupported content type: {content_type}")

    try:
        review = AdmissionReview.model_validate_json(body)
    except pydantic.ValidationError as err:
        raise DecodeError(f"could not decode body: {err}") from err

    if review.request is None:
        raise DecodeError("admission review does not contain a request")

    return review


def salvage_envelope(body: bytes) -> tuple[ApiVersion, str | None]:
    """Recover the api version and request uid from a body that could not be
    decoded, so that a failure response can still be matched to its request."""

    api_version, uid = ApiVersion.V1, None

    try:
        data = from_json(body)
    except ValueError:
        return api_version, uid

    if not isinstance(data, dict):
        return api_version, uid

    try:
        api_version = ApiVersion(data.get("apiVersion"))
    except ValueError:
        pass

    req = data.get("request")
    if isinstance(req, dict) and isinstance(req.get("uid"), str):
        uid = req["uid"]

    return api_version, uid


def encode_review(review: AdmissionReview) -> bytes:
    try:
        return review.model_dump_json(exclude_none=True).encode()
    except PydanticSerializationError as err:
        raise EncodeError(f"could not encode response: {err}") from err


def read_pod(admission_request: AdmissionRequest) -> Pod:
    if admission_request.object is None:
        raise UnmarshalError("request does not contain an object")

    try:
        return Pod.model_validate(admission_request.object)
    except pydantic.ValidationError as err:
        raise UnmarshalError(f"could not read object: {err}") from err


def failure_response(uid: str | None, err: Exception) -> AdmissionResponse:
    return AdmissionResponse(
        uid=uid,
        status=AdmissionReviewStatus(message=str(err)),
    )


def admission_decision(
    config: InjectorConfig, admission_request: AdmissionRequest
) -> AdmissionResponse:
    """Decide on a single admission request.

    This webhook only ever adds tolerations. A pod that does not qualify is
    allowed without a patch; there is no code path that denies a valid
    request. A response with allowed=false is only produced when the request
    itself could not be read, and it never carries a patch.
    """

    req = admission_request
    LOG.info(
        "AdmissionReview for kind=%s namespace=%s name=%s uid=%s operation=%s user=%s",
        req.kind.kind if req.kind else None,
        req.namespace,
        req.name,
        req.uid,
        req.operation,
        req.userInfo.username if req.userInfo else None,
    )

    try:
        pod = read_pod(req)
    except UnmarshalError as err:
        LOG.warning("failed to read object for request %s: %s", req.uid, err)
        return failure_response(req.uid, err)

    namespace = req.namespace or pod.metadata.namespace
    name = req.name or pod.metadata.name

    if namespace in config.ignored_namespaces:
        LOG.info(f"Skipping inject for {namespace}/{name}: namespace is ignored")
        return AdmissionResponse(allowed=True, uid=req.uid)

    # If the label does not match, there is nothing to do.
    if not should_inject(config, pod.metadata.labels):
        LOG.info(f"Skipping inject for {namespace}/{name}")
        return AdmissionResponse(allowed=True, uid=req.uid)

    LOG.info(f"Injecting toleration {config.toleration} into {namespace}/{name}")
    patch = build_patch(pod.spec.tolerations, [config.toleration])
    LOG.debug("patch: %s", patch.model_dump_json())

    return AdmissionResponse(
        uid=req.uid,
        allowed=True,
        patchType=PatchType.JSONPatch,
        patch=patch,
    )


def admit(config: InjectorConfig, body: bytes, content_type: str | None) -> AdmissionReview:
    """Run a raw request body through the full decision pipeline.

    Raises UnsupportedContentType if the body is not declared as JSON. Any
    other failure is reported in the returned review.
    """

    try:
        review = decode_review(body, content_type)
    except DecodeError as err:
        LOG.warning("rejecting request: %s", err)
        api_version, uid = salvage_envelope(body)
        return AdmissionReview(
            apiVersion=api_version, response=failure_response(uid, err)
        )

    return AdmissionReview(
        apiVersion=review.apiVersion,
        response=admission_decision(config, review.request),
    )


@jsonresponse()
def mutate_pod():
    return admit(current_app.injector_config, request.get_data(), request.content_type)


def handle_unsupportedcontenttype(err):
    LOG.warning("refusing request: %s", err)
    return str(err), 415, {"content-type": "text/plain"}


def handle_applicationerror(err):
    LOG.error("failed to process request: %s", err)
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def as_bool(val) -> bool:
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "on")
    return bool(val)


def as_set(val) -> frozenset[str]:
    if not val:
        return frozenset()
    if isinstance(val, str):
        val = val.split(",")
    return frozenset(item.strip() for item in val if item.strip())


def load_injector_config(app_config: Mapping) -> InjectorConfig:
    return InjectorConfig(
        match_label_key=app_config["MATCH_LABEL_KEY"],
        match_label_value=app_config["MATCH_LABEL_VALUE"],
        toleration=Toleration(
            key=app_config["TOLERATION_KEY"],
            value=app_config["TOLERATION_VALUE"],
            effect=app_config["TOLERATION_EFFECT"],
        ),
        ignored_namespaces=as_set(app_config["IGNORED_NAMESPACES"]),
    )


def parse_listen_address(addr: str) -> tuple[str, int]:
    host, _, port = addr.rpartition(":")
    return host or "0.0.0.0", int(port)


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    Configuration comes from DEFAULTS, then from WEBHOOK_* environment
    variables, then from keyword arguments. Environment values are used
    verbatim as strings so that label values such as "true" or "1" are not
    converted to other types.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("WEBHOOK", loads=str)
    if config:
        app.config.update(config)

    app.injector_config = load_injector_config(app.config)

    if not app.injector_config.match_label_key:
        LOG.warning("MATCH_LABEL_KEY is not set; no pods will be mutated")
    if not app.injector_config.toleration.key:
        LOG.warning("TOLERATION_KEY is not set")

    app.errorhandler(UnsupportedContentType)(handle_unsupportedcontenttype)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=mutate_pod, methods=["POST"])

    return app


def main():
    app = create_app()

    if as_bool(app.config["REGISTER"]):
        try:
            registration.register_webhook(
                registration.KubernetesRegistrar(), app.config
            )
        except RegistrationError as err:
            LOG.error("failed to register webhook: %s", err)
            sys.exit(1)

    host, port = parse_listen_address(app.config["LISTEN_ADDRESS"])

    ssl_context = None
    if app.config["TLS_CERT_FILE"] and app.config["TLS_KEY_FILE"]:
        ssl_context = (app.config["TLS_CERT_FILE"], app.config["TLS_KEY_FILE"])
    else:
        LOG.warning("TLS_CERT_FILE or TLS_KEY_FILE not set; serving plain HTTP")

    LOG.info("Starting webhook server on %s:%d", host, port)
    app.run(host=host, port=port, ssl_context=ssl_context)


if __name__ == "__main__":
    main()
