from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class ConnectBrokerRequest(BaseModel):
    """New broker connection with its long-lived secrets"""
    broker: str = Field(description="zerodha, upstox, angel, shoonya, mt4 or mt5")
    connection_name: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    client_code: Optional[str] = None
    password: Optional[str] = None
    pin: Optional[str] = None
    two_fa: Optional[str] = None
    redirect_uri: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict, description="Non-secret broker settings")

    def secrets(self) -> Dict[str, Optional[str]]:
        return {
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "client_code": self.client_code,
            "password": self.password,
            "pin": self.pin,
            "two_fa": self.two_fa,
        }


class BrokerLoginRequest(BaseModel):
    """Second-step credentials for manual, hashed and gateway logins"""
    totp: Optional[str] = None
    two_fa: Optional[str] = None
    password: Optional[str] = None
    client_code: Optional[str] = None
    user_id: Optional[str] = None
    pin: Optional[str] = None
    imei: Optional[str] = None
    login: Optional[str] = None
    server_url: Optional[str] = None

    def to_credentials(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump().items() if v not in (None, "")}


class ShoonyaCredentialCheckRequest(BaseModel):
    user_id: str
    vendor_code: str
    api_secret: str
