"""Configuration management for the sdtexture toolkit.

This module provides the server configuration using Pydantic Settings.
Values are loaded from environment variables with the SDTEXTURE_ prefix,
allowing the backend address, credentials and polling behaviour to be
changed without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Keyword arguments passed to ``ServerConfig(...)``
2. Environment variables (SDTEXTURE_* prefix)
3. .env file in the working directory
4. Default values defined in ServerConfig

Example .env file:
    SDTEXTURE_SERVER_URL=http://192.168.1.20:7860
    SDTEXTURE_USE_AUTH=true
    SDTEXTURE_USERNAME=artist
    SDTEXTURE_PASSWORD=secret
    SDTEXTURE_POLL_INTERVAL=0.5

Explicit Injection
------------------
There is no global configuration instance.  Callers construct a
``ServerConfig`` and hand it to :class:`~sdtexture.core.client.StableDiffusionClient`
explicitly:

    from sdtexture.core.config import ServerConfig
    from sdtexture.core.client import StableDiffusionClient

    config = ServerConfig(server_url="http://127.0.0.1:7860")
    async with StableDiffusionClient(config) as client:
        models = await client.list_models()

Authorization Header
--------------------
When ``use_auth`` is enabled every request carries
``Authorization: Basic <base64(username:password)>``.  The header value is
memoised and recomputed on first use after either credential changes.
"""

import base64
import logging
from pathlib import Path

from pydantic import Field, PrivateAttr, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class ServerConfig(BaseSettings):
    """Connection and default-parameter settings for an AUTOMATIC1111 server.

    Attributes
    ----------
    Server Settings:
        server_url : str
            Base URL of the Stable Diffusion server
        models_path, options_path, txt2img_path, img2img_path, progress_path : str
            Endpoint paths relative to ``server_url``

    Request Settings:
        use_auth : bool
            Send HTTP basic auth with every request
        username : str
            Basic auth user name
        password : SecretStr
            Basic auth password
        content_type : str
            ``Content-Type`` header value
        accept : str
            ``Accept`` header value
        request_timeout : float
            Timeout in seconds for model, option and progress requests
        generation_timeout : float | None
            How long to wait for a generation before giving up (None = forever)
        poll_interval : float
            Seconds between progress polls while a generation is running

    Generation Defaults:
        default_sampler, default_steps, default_cfg_scale, default_width,
        default_height, default_seed, normal_map_strength

    Paths:
        outputs_dir : Path
            Directory the output helpers write generated images to

    Notes
    -----
    - Directories are *not* created on initialisation; the output helpers
      create them on first write.
    - Credentials may be reassigned at runtime; the derived auth header is
      rebuilt lazily on the next request.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SDTEXTURE_",
        case_sensitive=False,
        extra="ignore",
    )

    # Server endpoints
    server_url: str = Field(
        default="http://127.0.0.1:7860",
        description="Base URL of the AUTOMATIC1111 server",
    )
    models_path: str = Field(default="/sdapi/v1/sd-models")
    options_path: str = Field(default="/sdapi/v1/options")
    txt2img_path: str = Field(default="/sdapi/v1/txt2img")
    img2img_path: str = Field(default="/sdapi/v1/img2img")
    progress_path: str = Field(default="/sdapi/v1/progress")

    # Request settings
    use_auth: bool = Field(default=False, description="Send HTTP basic auth")
    username: str = Field(default="")
    password: SecretStr = Field(default=SecretStr(""))
    content_type: str = Field(default="application/json")
    accept: str = Field(default="application/json")
    request_timeout: float = Field(
        default=30.0,
        description="Timeout for model, option and progress requests (seconds)",
        gt=0,
    )
    generation_timeout: float | None = Field(
        default=None,
        description="Give up waiting for a generation after this many seconds",
        gt=0,
    )
    poll_interval: float = Field(
        default=0.75,
        description="Seconds between progress polls",
        ge=0.05,
        le=10.0,
    )

    # Generation defaults
    default_sampler: str = Field(default="Euler a")
    default_steps: int = Field(default=50, ge=1, le=150)
    default_cfg_scale: float = Field(default=7.0, ge=1, le=30)
    default_width: int = Field(default=512, ge=128, le=2048)
    default_height: int = Field(default=512, ge=128, le=2048)
    default_seed: int = Field(default=-1)
    normal_map_strength: float = Field(default=0.5, ge=0, le=10)

    # Paths
    outputs_dir: Path = Field(
        default=Path("outputs"),
        description="Directory to save generated images",
    )

    _auth_inputs: tuple[str, str] | None = PrivateAttr(default=None)
    _auth_header: str | None = PrivateAttr(default=None)

    def endpoint(self, path: str) -> str:
        """Join ``server_url`` and an endpoint path."""
        return self.server_url.rstrip("/") + "/" + path.lstrip("/")

    @property
    def models_url(self) -> str:
        return self.endpoint(self.models_path)

    @property
    def options_url(self) -> str:
        return self.endpoint(self.options_path)

    @property
    def txt2img_url(self) -> str:
        return self.endpoint(self.txt2img_path)

    @property
    def img2img_url(self) -> str:
        return self.endpoint(self.img2img_path)

    @property
    def progress_url(self) -> str:
        return self.endpoint(self.progress_path)

    @property
    def authorization(self) -> str:
        """The ``Authorization`` header value for the current credentials.

        The value is cached against the (username, password) pair it was
        built from and rebuilt whenever either of them changes.
        """
        inputs = (self.username, self.password.get_secret_value())
        if self._auth_header is None or self._auth_inputs != inputs:
            self._auth_header = build_basic_auth(*inputs)
            self._auth_inputs = inputs
        return self._auth_header

    def headers(self, with_body: bool = False) -> dict[str, str]:
        """Build the request headers for a backend call.

        Args:
            with_body: Include ``Content-Type`` (requests that send JSON)

        Returns:
            Header dictionary, including ``Authorization`` when auth is enabled
        """
        headers = {"Accept": self.accept}
        if with_body:
            headers["Content-Type"] = self.content_type

        if self.use_auth:
            if not self.username:
                logger.warning("use_auth is enabled, but username is empty.")
            if not self.password.get_secret_value():
                logger.warning("use_auth is enabled, but password is empty.")
            headers["Authorization"] = self.authorization

        return headers


def build_basic_auth(username: str, password: str) -> str:
    """Return ``Basic <token>`` for the given credentials.

    Credentials are encoded as ISO-8859-1, the encoding HTTP basic auth
    historically assumes.
    """
    token = base64.b64encode(f"{username}:{password}".encode("latin-1")).decode("ascii")
    return f"Basic {token}"
