import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

PACKAGE_ROOT = Path(__file__).resolve().parent

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}.")
    if value <= 0:
        raise ValueError(f"Environment variable {name} must be positive, got {value}.")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}.")
    if value <= 0:
        raise ValueError(f"Environment variable {name} must be positive, got {value}.")
    return value


@dataclass(frozen=True)
class Settings:
    """
    제어 평면 전체가 공유하는 설정 값.

    모든 값은 SANDBOX_ 접두사가 붙은 환경 변수(.env 파일 포함)에서 읽어옵니다.
    """
    database_url: str = "sqlite:///sandbox_vm.db"
    config_dir: Path = Path("vm-configs")
    build_context: Path = Path(".")
    dockerfile: str = "Dockerfile"
    image: str = "sandbox-vm-image:latest"
    docker_bin: str = "docker"
    runtime_timeout: float = 300.0
    build_timeout: float = 900.0
    public_host: str = "localhost"
    vm_quota: int = 3
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        환경 변수에서 설정을 읽어 Settings를 생성합니다.

        Raises:
            ValueError: 숫자 값이 올바르지 않을 때.
        """
        env = os.environ
        return cls(
            database_url=env.get("SANDBOX_DATABASE_URL", cls.database_url),
            config_dir=Path(env.get("SANDBOX_CONFIG_DIR", str(cls.config_dir))),
            build_context=Path(env.get("SANDBOX_BUILD_CONTEXT", str(cls.build_context))),
            dockerfile=env.get("SANDBOX_DOCKERFILE", cls.dockerfile),
            image=env.get("SANDBOX_IMAGE", cls.image),
            docker_bin=env.get("SANDBOX_DOCKER_BIN", cls.docker_bin),
            runtime_timeout=_env_float("SANDBOX_RUNTIME_TIMEOUT", cls.runtime_timeout),
            build_timeout=_env_float("SANDBOX_BUILD_TIMEOUT", cls.build_timeout),
            public_host=env.get("SANDBOX_PUBLIC_HOST", cls.public_host),
            vm_quota=_env_int("SANDBOX_VM_QUOTA", cls.vm_quota),
            log_level=env.get("SANDBOX_LOG_LEVEL", cls.log_level).upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """프로세스 단위로 한 번만 .env를 읽고 Settings를 캐시합니다."""
    load_dotenv()
    return Settings.from_env()


def configure_logging(level: str = "INFO"):
    """루트 로거에 스트림 핸들러를 하나만 설치합니다."""
    root = logging.getLogger()
    if not any(getattr(h, "_sandbox_vm", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._sandbox_vm = True
        root.addHandler(handler)
    root.setLevel(level)
