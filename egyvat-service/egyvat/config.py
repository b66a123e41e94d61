"""
Service configuration.

Values are read once from the environment (and an optional ``.env`` file)
into a ``Settings`` object that is passed explicitly to the components.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .schema import Supplier


DEMO_CLIENT_ID = "DEMO_MODE"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Authority API
    eta_api_url: str = "https://api.invoicing.eta.gov.eg"
    eta_client_id: str = ""
    eta_client_secret: str = ""
    environment: str = ""
    demo_mode: bool = False

    # Workflow
    max_submission_attempts: int = Field(default=3, ge=1)
    demo_acceptance_probability: float = Field(default=0.9, ge=0.0, le=1.0)
    demo_delay_seconds: float = Field(default=0.5, ge=0.0)
    request_timeout_seconds: float = Field(default=30.0, gt=0.0)

    # Supplier identity
    supplier_name: str = "Test Company Ltd"
    supplier_tax_number: str = "123456789"
    supplier_address: str = "123 Business St, Cairo, Egypt"
    supplier_activity_code: str = "4620"
    supplier_branch_id: str = "0"

    @property
    def is_demo(self) -> bool:
        return (
            self.demo_mode
            or self.environment.lower() == "demo"
            or self.eta_client_id in ("", DEMO_CLIENT_ID)
        )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    def supplier(self) -> Supplier:
        return Supplier(
            name=self.supplier_name,
            tax_number=self.supplier_tax_number,
            address=self.supplier_address,
            activity_code=self.supplier_activity_code,
            branch_id=self.supplier_branch_id or "0",
        )
