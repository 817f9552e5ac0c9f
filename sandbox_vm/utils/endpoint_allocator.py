# sandbox_vm/utils/endpoint_allocator.py
from typing import NamedTuple

# 호스트 측 포트는 VM id에 고정 오프셋을 더해 결정합니다.
BASE_DISPLAY_PORT = 6080
BASE_CONTROL_PORT = 5901

# 컨테이너 내부에서 noVNC / VNC 서버가 듣는 포트
INTERNAL_DISPLAY_PORT = 6080
INTERNAL_CONTROL_PORT = 5901

MAX_PORT = 65535


class EndpointPair(NamedTuple):
    display_port: int
    control_port: int


def max_vm_id() -> int:
    """
    포트가 겹치지 않는 가장 큰 VM id.

    제어 포트 대역(BASE_CONTROL_PORT + id)이 디스플레이 포트 대역
    (BASE_DISPLAY_PORT + 1 부터)에 닿기 직전까지만 id를 받을 수 있습니다.
    id는 재사용되지 않으므로 이 값은 동시에 존재하는 VM 수가 아니라
    지금까지 생성된(롤백된 것 포함) VM 수의 상한입니다.
    """
    return min(BASE_DISPLAY_PORT - BASE_CONTROL_PORT, MAX_PORT - BASE_DISPLAY_PORT)


def allocate(vm_id: int) -> EndpointPair:
    """
    VM id로부터 (디스플레이 포트, 제어 포트) 쌍을 계산합니다.

    별도의 할당 테이블 없이 id만으로 결정되므로 프로세스를 재시작해도 같은 값이
    나오고, 1..max_vm_id() 범위에서 서로 다른 VM의 포트는 겹치지 않습니다.

    Raises:
        ValueError: id가 양의 정수가 아니거나 max_vm_id()를 넘을 때.
    """
    if isinstance(vm_id, bool) or not isinstance(vm_id, int) or vm_id <= 0:
        raise ValueError(f"VM id must be a positive integer, got {vm_id!r}.")
    if vm_id > max_vm_id():
        raise ValueError(f"VM id {vm_id} is outside the collision-free port range (max {max_vm_id()}).")
    return EndpointPair(BASE_DISPLAY_PORT + vm_id, BASE_CONTROL_PORT + vm_id)


def connection_url(host: str, vm_id: int) -> str:
    """원격 디스플레이(noVNC) 클라이언트가 접속할 URL."""
    display_port = allocate(vm_id).display_port
    return f"http://{host}:{display_port}/vnc.html?autoconnect=true"
