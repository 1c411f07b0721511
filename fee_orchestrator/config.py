"""Application configuration"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    app_name: str = "Token Fee Orchestrator"
    app_version: str = "0.1.0"
    debug: bool = True
    log_level: str = "INFO"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_prefix: str = "/api/v1"

    # Solana
    solana_cluster: str = "devnet"
    solana_rpc_url: str = "https://api.devnet.solana.com"
    commitment: str = "confirmed"
    explorer_url: str = "https://explorer.solana.com"
    confirmation_sleep_seconds: float = 0.5

    # Wallets
    wallet_env_file: str = ".env"
    airdrop_threshold_lamports: int = 1_000_000_000  # 1 SOL
    airdrop_amount_lamports: int = 1_000_000_000

    # Demo scenario
    demo_decimals: int = 9
    demo_fee_basis_points: int = 50
    demo_maximum_fee: int = 5_000
    demo_mint_amount: int = 1_000_000_000
    demo_transfer_amount: int = 1_000_000

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def explorer_tx_url(self, signature: str) -> str:
        """Explorer link for a transaction signature"""
        return f"{self.explorer_url}/tx/{signature}?cluster={self.solana_cluster}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
