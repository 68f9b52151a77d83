"""Tests for the Secrets Manager backend with a mocked boto3 client."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, NoCredentialsError

from secretsync.backends.aws import AWSSecretsManagerBackend
from secretsync.engine.errors import BackendAuthError, BackendUnreachableError, SecretNotFoundError
from secretsync.engine.models import BackendHealth, BackendKind, BackendRef


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "GetSecretValue")


@pytest.fixture
def ref() -> BackendRef:
    return BackendRef(
        name="aws-prod",
        kind=BackendKind.AWS,
        cluster_scoped=True,
        server="eu-west-1",
        auth_method="default",
    )


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def backend(ref, client) -> AWSSecretsManagerBackend:
    return AWSSecretsManagerBackend(ref, client=client)


class TestFetch:
    @pytest.mark.asyncio
    async def test_json_secret_string(self, backend, client):
        client.get_secret_value.return_value = {
            "SecretString": '{"username": "admin", "password": "s3cr3t"}',
            "VersionId": "v-123",
        }
        doc = await backend.fetch_document("database/postgres")
        assert doc.fields == {"username": "admin", "password": "s3cr3t"}
        assert doc.revision == "v-123"
        client.get_secret_value.assert_called_once_with(SecretId="database/postgres")

    @pytest.mark.asyncio
    async def test_plain_secret_string(self, backend, client):
        client.get_secret_value.return_value = {"SecretString": "hunter2", "VersionId": "v1"}
        value = await backend.fetch("api-key")
        assert bytes(value.value) == b"hunter2"

    @pytest.mark.asyncio
    async def test_plain_string_has_no_properties(self, backend, client):
        client.get_secret_value.return_value = {"SecretString": "hunter2"}
        with pytest.raises(SecretNotFoundError, match="not a key/value document"):
            await backend.fetch("api-key", "password")

    @pytest.mark.asyncio
    async def test_binary_secret(self, backend, client):
        client.get_secret_value.return_value = {"SecretBinary": b"\x00\xff", "VersionId": "v1"}
        value = await backend.fetch("cert")
        assert bytes(value.value) == b"\x00\xff"

    @pytest.mark.asyncio
    async def test_version_stage(self, backend, client):
        client.get_secret_value.return_value = {"SecretString": "x"}
        await backend.fetch_document("k", version="AWSPREVIOUS")
        client.get_secret_value.assert_called_once_with(SecretId="k", VersionStage="AWSPREVIOUS")

    @pytest.mark.asyncio
    async def test_version_id(self, backend, client):
        client.get_secret_value.return_value = {"SecretString": "x"}
        await backend.fetch_document("k", version="0f1e2d")
        client.get_secret_value.assert_called_once_with(SecretId="k", VersionId="0f1e2d")

    @pytest.mark.asyncio
    async def test_path_prefix(self, ref, client):
        ref.path = "prod/"
        client.get_secret_value.return_value = {"SecretString": "x"}
        await AWSSecretsManagerBackend(ref, client=client).fetch_document("db")
        client.get_secret_value.assert_called_once_with(SecretId="prod/db")


class TestErrorMapping:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,expected",
        [
            (_client_error("ResourceNotFoundException"), SecretNotFoundError),
            (_client_error("AccessDeniedException"), BackendAuthError),
            (_client_error("ExpiredTokenException"), BackendAuthError),
            (_client_error("InternalServiceError"), BackendUnreachableError),
            (_client_error("ThrottlingException"), BackendUnreachableError),
            (NoCredentialsError(), BackendAuthError),
            (EndpointConnectionError(endpoint_url="https://sm.test"), BackendUnreachableError),
        ],
    )
    async def test_mapping(self, backend, client, error, expected):
        client.get_secret_value.side_effect = error
        with pytest.raises(expected):
            await backend.fetch_document("database/postgres")


class TestListAndHealth:
    @pytest.mark.asyncio
    async def test_list_paginates_and_filters(self, ref, client):
        ref.path = "prod"
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"SecretList": [{"Name": "prod/db/postgres"}, {"Name": "prod/db/replica"}]},
            {"SecretList": [{"Name": "prod/dbx"}, {"Name": "prod/api"}]},
        ]
        client.get_paginator.return_value = paginator

        keys = await AWSSecretsManagerBackend(ref, client=client).list_keys("db/")

        # Name filters match by prefix server-side; siblings like "dbx" are dropped locally
        assert keys == ["db/postgres", "db/replica"]
        paginator.paginate.assert_called_once_with(
            Filters=[{"Key": "name", "Values": ["prod/db"]}]
        )

    @pytest.mark.asyncio
    async def test_healthy(self, backend, client):
        client.list_secrets.return_value = {"SecretList": []}
        assert await backend.health_check() == BackendHealth.HEALTHY
        client.list_secrets.assert_called_once_with(MaxResults=1)

    @pytest.mark.asyncio
    async def test_unreachable(self, backend, client):
        client.list_secrets.side_effect = _client_error("InternalServiceError")
        assert await backend.health_check() == BackendHealth.UNREACHABLE
