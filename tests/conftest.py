import logging

import pytest

from accountmatic import CredentialStore, ProvisioningContext, Settings
from fakes import FakeSystem


@pytest.fixture
def system():
    return FakeSystem()


@pytest.fixture
def cred_path(tmp_path):
    return tmp_path / "private" / "credentials.csv"


@pytest.fixture
def store(cred_path):
    with CredentialStore(str(cred_path)) as s:
        yield s


@pytest.fixture
def log(caplog):
    caplog.set_level(logging.INFO, logger="provisioning-tests")
    return logging.getLogger("provisioning-tests")


@pytest.fixture
def settings():
    return Settings(force_password_change=True)


@pytest.fixture
def ctx(system, store, log, settings):
    return ProvisioningContext(
        accounts=system.accounts,
        groups=system.group_db,
        filesystem=system.filesystem,
        credentials=store,
        log=log,
        settings=settings,
    )

