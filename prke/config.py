import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class PRKESettings:
    """
    Tunables read from the environment (or a .env file).

    The field modulus and generator are protocol constants, not settings.
    """
    max_prime_attempts: int = 100_000
    max_next_prime_steps: int = 100_000
    entanglement_threshold: float = 0.7
    log_level: str = "INFO"
    session_store_path: str = "prke_sessions.json"

    @staticmethod
    def from_env() -> "PRKESettings":
        return PRKESettings(
            max_prime_attempts=int(os.getenv("PRKE_MAX_PRIME_ATTEMPTS", "100000")),
            max_next_prime_steps=int(os.getenv("PRKE_MAX_NEXT_PRIME_STEPS", "100000")),
            entanglement_threshold=float(os.getenv("PRKE_ENTANGLEMENT_THRESHOLD", "0.7")),
            log_level=os.getenv("PRKE_LOG_LEVEL", "INFO").upper(),
            session_store_path=os.getenv("PRKE_SESSION_STORE", "prke_sessions.json"),
        )


def configure_logging(settings: PRKESettings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
