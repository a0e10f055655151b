import os
import tempfile
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import ValidationError
from typing import Dict, Optional


class Settings(BaseSettings):
    # Key store: one directory per party holding payment/hydra keys
    HYDRA_WALLETS_DIR: str = ".tmp/wallets"

    # Ledger CLI
    CARDANO_CLI_PATH: str = "../cardano-preprod-node/bin/cardano-cli"
    # Era prefix for `transaction` sub-commands, empty string disables it
    CARDANO_ERA: str = "conway"
    TESTNET_MAGIC: int = 1
    CARDANO_CLI_TIMEOUT: float = 60.0
    # Layer-one node socket, used to query wallet UTXOs and submit commits
    CARDANO_NODE_SOCKET_PATH: str = ".cardano/node.socket"

    # Hydra nodes
    HYDRA_HOST: str = "127.0.0.1"
    HYDRA_BASE_PORT: int = 4001
    # Fixed API ports, other parties get HYDRA_BASE_PORT + sorted index
    HYDRA_NODE_PORTS: Dict[str, int] = {"alice": 4001, "bob": 4002}
    HYDRA_COMMAND_TIMEOUT: float = 5.0
    HYDRA_HTTP_TIMEOUT: float = 30.0
    HYDRA_HEAD_QUERY_TIMEOUT: float = 10.0
    HYDRA_DEBUG: bool = False

    # Transaction build artifacts
    TX_TMP_DIR: Optional[str] = None

    # Confirmation tracking
    CONFIRM_POLL_INTERVAL: float = 2.0
    CONFIRM_MAX_POLLS: int = 30

    # Load env based on MODE: dev->env.dev (default), main->env.main, else env
    _mode = os.getenv("MODE") or os.getenv("ENV_MODE") or "dev"
    _env_file = "env.dev" if _mode == "dev" else "env.main" if _mode == "main" else "env"
    model_config = SettingsConfigDict(env_file=_env_file, case_sensitive=True, extra="ignore")

    @property
    def tx_tmp_dir(self) -> str:
        return self.TX_TMP_DIR or tempfile.gettempdir()


def _load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as e:
        invalid = [str(err['loc'][0]) for err in e.errors() if err.get('loc')]
        if invalid:
            hint_lines = [
                "Invalid Hydra environment variables:",
                *[f"  - {name}" for name in invalid]
            ]
            raise RuntimeError("\n".join(hint_lines)) from e
        raise

settings = _load_settings()
