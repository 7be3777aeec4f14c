import pytest

import mutate
from models import InjectorConfig, Toleration


TOLERATION = Toleration(key="dedicated", value="special", effect="NoSchedule")


@pytest.fixture()
def toleration():
    return TOLERATION


@pytest.fixture()
def injector_config():
    return InjectorConfig(
        match_label_key="team",
        match_label_value="x",
        toleration=TOLERATION,
    )


@pytest.fixture()
def app():
    app = mutate.create_app(
        MATCH_LABEL_KEY="team",
        MATCH_LABEL_VALUE="x",
        TOLERATION_KEY=TOLERATION.key,
        TOLERATION_VALUE=TOLERATION.value,
        TOLERATION_EFFECT=TOLERATION.effect,
        IGNORED_NAMESPACES="kube-system,kube-public",
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()
