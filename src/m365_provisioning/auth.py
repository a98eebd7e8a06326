from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional

import msal
from azure.identity import ManagedIdentityCredential
from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .audit import JsonAuditLogger
from .config import CertificateAuth, ClientSecretAuth, ManagedIdentityAuth, TenantConfig

logger = logging.getLogger(__name__)


def load_certificate(path: Path) -> x509.Certificate:
    try:
        with Path(path).open("rb") as handle:
            data = handle.read()
    except OSError as exc:
        raise RuntimeError(f"Failed to read certificate at {path}: {exc}") from exc
    return x509.load_pem_x509_certificate(data)


class TokenProvider:
    """Handles token acquisition for one tenant across the Microsoft 365 resources.

    Graph, SharePoint, Power Automate and Dataverse each need their own audience, so
    callers pass the scopes per request. Supports client secret, certificate-based
    auth, and managed identities. The MSAL application is built once so its token
    cache serves repeated calls; managed identity relies on the platform cache.
    """

    def __init__(self, tenant_config: TenantConfig, audit_logger: JsonAuditLogger):
        self.tenant_config = tenant_config
        self.audit = audit_logger
        self._app: Optional[msal.ConfidentialClientApplication] = None
        self._credential: Optional[ManagedIdentityCredential] = None

    def acquire_token(self, scopes: Iterable[str]) -> str:
        scopes = list(scopes)
        auth_config = self.tenant_config.auth

        if isinstance(auth_config, (ClientSecretAuth, CertificateAuth)):
            app = self._confidential_app()
            result = app.acquire_token_silent(scopes, account=None)
            if not result:
                result = app.acquire_token_for_client(scopes=scopes)
                self.audit.info(
                    "acquired_app_token",
                    tenant_id=self.tenant_config.tenant_id,
                    auth_type=auth_config.type,
                    scopes=scopes,
                )
            return self._extract_token(result)

        if isinstance(auth_config, ManagedIdentityAuth):
            if self._credential is None:
                self._credential = ManagedIdentityCredential(client_id=auth_config.client_id)
            result = self._credential.get_token(*scopes)
            self.audit.info(
                "acquired_app_token",
                tenant_id=self.tenant_config.tenant_id,
                auth_type="managed_identity",
                scopes=scopes,
            )
            return result.token

        raise ValueError("Unsupported authentication configuration")

    def _confidential_app(self) -> msal.ConfidentialClientApplication:
        if self._app is not None:
            return self._app

        auth_config = self.tenant_config.auth
        if isinstance(auth_config, ClientSecretAuth):
            credential = auth_config.client_secret.resolve()
        else:
            credential = self._certificate_credential(auth_config)

        self._app = msal.ConfidentialClientApplication(
            client_id=auth_config.client_id,
            client_credential=credential,
            authority=f"{auth_config.authority_host}/{self.tenant_config.tenant_id}",
            token_cache=msal.TokenCache(),
        )
        return self._app

    @staticmethod
    def _extract_token(result: Optional[dict]) -> str:
        if not result or "access_token" not in result:
            raise RuntimeError(f"Token acquisition failed: {json.dumps(result)}")
        return result["access_token"]

    @staticmethod
    def _certificate_credential(auth_config: CertificateAuth) -> Dict[str, Optional[str]]:
        certificate = load_certificate(auth_config.certificate_path)
        key_path = auth_config.private_key_path or auth_config.certificate_path
        try:
            private_key = Path(key_path).read_text(encoding="utf-8")
        except OSError as exc:
            raise RuntimeError(f"Failed to read private key at {key_path}: {exc}") from exc

        password = None
        if auth_config.certificate_password:
            password = auth_config.certificate_password.resolve()

        return {
            "private_key": private_key,
            "thumbprint": certificate.fingerprint(hashes.SHA1()).hex().upper(),
            "passphrase": password,
        }


class StaticTokenProvider:
    """Returns a pre-acquired bearer token, e.g. one minted by ``az account get-access-token``."""

    def __init__(self, token: str):
        self.token = token

    def acquire_token(self, scopes: Iterable[str]) -> str:
        return self.token
