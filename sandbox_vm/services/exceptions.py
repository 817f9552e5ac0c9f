# sandbox_vm/services/exceptions.py

class SandboxError(Exception):
    """모든 제어 평면 오류의 기반 클래스. kind는 기계가 읽을 수 있는 오류 종류입니다."""
    kind = "Unknown"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"kind": self.kind, "message": self.message}


# --- Request Exceptions ---
class ValidationError(SandboxError):
    """이름 누락, 잘못된 상태 값 등 입력이 올바르지 않을 때"""
    kind = "ValidationError"


class QuotaExceededError(SandboxError):
    """사용자가 이미 최대 개수의 VM을 보유하고 있을 때"""
    kind = "QuotaExceeded"


class VmNotFoundOrUnauthorizedError(SandboxError):
    """VM이 없거나 다른 사용자의 VM일 때 (둘을 구분하지 않음)"""
    kind = "NotFoundOrUnauthorized"


class EndpointSpaceExhaustedError(SandboxError):
    """VM id가 충돌 없는 포트 범위를 벗어나 엔드포인트를 할당할 수 없을 때"""
    kind = "EndpointSpaceExhausted"


# --- Internal Exceptions ---
class DescriptorWriteError(SandboxError):
    """격리 디스크립터 파일을 쓰지 못했을 때 (디스크 부족, 권한 등)"""
    kind = "DescriptorWriteFailed"


class InconsistentStateError(SandboxError):
    """레코드와 런타임 산출물 사이의 불변식이 깨졌을 때"""
    kind = "InconsistentState"


# --- Runtime Driver Exceptions ---
class RuntimeDriverError(SandboxError):
    """컨테이너 런타임 명령이 실패했을 때. stderr는 진단을 위해 그대로 보존합니다."""
    kind = "Unknown"

    def __init__(self, vm_id: int, operation: str, detail: str = "", stderr: str = ""):
        self.vm_id = vm_id
        self.operation = operation
        self.stderr = stderr
        target = f" for VM {vm_id}" if vm_id is not None else ""
        message = f"Runtime '{operation}' failed{target} ({self.kind})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def to_dict(self):
        data = super().to_dict()
        data["operation"] = self.operation
        return data


class BuildFailedError(RuntimeDriverError):
    """이미지 빌드에 실패했을 때"""
    kind = "BuildFailed"


class RuntimeNotFoundError(RuntimeDriverError):
    """해당 VM의 런타임 인스턴스(또는 디스크립터)가 없을 때"""
    kind = "NotFound"


class RuntimeUnavailableError(RuntimeDriverError):
    """컨테이너 런타임 데몬에 연결할 수 없거나 CLI가 없을 때"""
    kind = "RuntimeUnavailable"


class RuntimeTimeoutError(RuntimeDriverError):
    """명령이 제한 시간 안에 끝나지 않았을 때. 성공으로 간주하지 않습니다."""
    kind = "Timeout"


class RuntimeUnknownError(RuntimeDriverError):
    """분류되지 않은 런타임 실패"""
    kind = "Unknown"
