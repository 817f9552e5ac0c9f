# sandbox_vm/app.py
import asyncio
import json
import logging
import re
import sys
import threading
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIServer, make_server

from sandbox_vm.config import Settings, configure_logging, get_settings
from sandbox_vm.database.database import SessionLocal
from sandbox_vm.database.db_init import initialize_db
from sandbox_vm.repositories.sqlalchemy.sqlalchemy_vm_repository import SqlalchemyVMRepository
from sandbox_vm.services.compute_service import ComputeService
from sandbox_vm.services.runtime_driver import ComposeRuntimeDriver
from sandbox_vm.services.exceptions import (
    BuildFailedError,
    DescriptorWriteError,
    EndpointSpaceExhaustedError,
    InconsistentStateError,
    QuotaExceededError,
    RuntimeNotFoundError,
    RuntimeTimeoutError,
    RuntimeUnavailableError,
    RuntimeUnknownError,
    SandboxError,
    ValidationError,
    VmNotFoundOrUnauthorizedError,
)
from sandbox_vm.utils.descriptor_generator import ensure_config_dir

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """요청자 식별 정보(X-Owner-Id)가 없거나 올바르지 않을 때"""
    pass


# --------------------------------------------------------------------------
## 이벤트 루프 스레드
# --------------------------------------------------------------------------

class LoopThread:
    """
    오케스트레이터 코루틴을 실행하는 전용 이벤트 루프 스레드.
    모든 요청 스레드가 같은 루프를 쓰므로 VM별 잠금이 요청 간에 공유됩니다.
    """

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, name="sandbox-vm-loop", daemon=True)
        self._thread.start()

    def run(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result()

    def close(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join()
        self.loop.close()


# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        data = json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValidationError("Invalid or missing JSON body.")
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object.")
    return data


def get_owner_id(environ) -> int:
    # 인증 계층(범위 밖)이 검증한 사용자 ID를 헤더로 넘겨줍니다.
    raw = environ.get("HTTP_X_OWNER_ID", "")
    if not raw.isdigit() or int(raw) <= 0:
        raise AuthenticationError("Missing or invalid 'X-Owner-Id' header.")
    return int(raw)


ERROR_STATUS = {
    AuthenticationError: "401 Unauthorized",
    ValidationError: "400 Bad Request",
    QuotaExceededError: "400 Bad Request",
    VmNotFoundOrUnauthorizedError: "404 Not Found",
    BuildFailedError: "502 Bad Gateway",
    RuntimeNotFoundError: "502 Bad Gateway",
    RuntimeUnknownError: "502 Bad Gateway",
    RuntimeUnavailableError: "503 Service Unavailable",
    RuntimeTimeoutError: "504 Gateway Timeout",
    EndpointSpaceExhaustedError: "503 Service Unavailable",
    DescriptorWriteError: "500 Internal Server Error",
    InconsistentStateError: "500 Internal Server Error",
}


def handle_exception(e):
    status = ERROR_STATUS.get(type(e), "500 Internal Server Error")
    if isinstance(e, SandboxError):
        error = e.to_dict()
    elif isinstance(e, AuthenticationError):
        error = {"kind": "Unauthorized", "message": str(e)}
    else:
        logger.exception("Unhandled error while serving request")
        error = {"kind": "Internal", "message": "Internal server error."}
    return status, json.dumps({"error": error})


# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

def list_vms_handler(environ, service, runner):
    owner_id = get_owner_id(environ)
    vms = runner.run(service.list_vms(owner_id))
    return '200 OK', json.dumps({'vms': vms})


def create_vm_handler(environ, service, runner):
    owner_id = get_owner_id(environ)
    data = get_request_data(environ)
    vm = runner.run(service.create_vm(owner_id, data.get('name')))
    return '201 Created', json.dumps({"message": "VM created successfully", "vm": vm})


def get_vm_handler(environ, service, runner, vm_id):
    owner_id = get_owner_id(environ)
    vm = runner.run(service.get_vm(int(vm_id), owner_id))
    return '200 OK', json.dumps({"vm": vm})


def set_status_handler(environ, service, runner, vm_id):
    owner_id = get_owner_id(environ)
    data = get_request_data(environ)
    vm = runner.run(service.set_status(int(vm_id), owner_id, data.get('status')))
    action = "started" if vm["status"] == "running" else "stopped"
    return '200 OK', json.dumps({"message": f"VM {action} successfully", "vm": vm})


def delete_vm_handler(environ, service, runner, vm_id):
    owner_id = get_owner_id(environ)
    runner.run(service.delete_vm(int(vm_id), owner_id))
    return '200 OK', json.dumps({"message": "VM deleted successfully"})


def reconcile_handler(environ, service, runner):
    get_owner_id(environ)
    orphans = runner.run(service.find_orphans())
    return '200 OK', json.dumps({"orphans": orphans})


ROUTES = [
    ('GET', r'^/api/vms$', list_vms_handler),
    ('POST', r'^/api/vms$', create_vm_handler),
    ('GET', r'^/api/vms/([0-9]+)$', get_vm_handler),
    ('PUT', r'^/api/vms/([0-9]+)/status$', set_status_handler),
    ('DELETE', r'^/api/vms/([0-9]+)$', delete_vm_handler),
    ('POST', r'^/api/actions/reconcile$', reconcile_handler),
]


# --------------------------------------------------------------------------
## WSGI 애플리케이션 (의존성 주입 및 라우팅)
# --------------------------------------------------------------------------

def build_service(settings: Settings) -> ComputeService:
    """저장소 -> 드라이버 -> 오케스트레이터 순서로 의존성을 생성합니다."""
    ensure_config_dir(settings.config_dir)
    initialize_db()
    vm_repo = SqlalchemyVMRepository(SessionLocal)
    driver = ComposeRuntimeDriver(settings)
    return ComputeService(vm_repo, driver, settings)


def make_application(service: ComputeService, runner: LoopThread):
    def application(environ, start_response):
        path = environ.get("PATH_INFO", "")
        method = environ.get("REQUEST_METHOD", "")
        try:
            handler, path_args = None, []
            for route_method, pattern, route_handler in ROUTES:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, response_body = handler(environ, service, runner, *path_args)
            else:
                status, response_body = '404 Not Found', json.dumps({'error': {'kind': 'NotFound', 'message': 'Not Found'}})
        except Exception as e:
            status, response_body = handle_exception(e)

        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    return application


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

def main(argv=None):
    settings = get_settings()
    configure_logging(settings.log_level)
    port = int((argv or sys.argv[1:] or ["8000"])[0])

    runner = LoopThread()
    try:
        application = make_application(build_service(settings), runner)
        with make_server("", port, application, server_class=ThreadingWSGIServer) as httpd:
            logger.info("Serving sandbox VM control plane on port %s...", port)
            httpd.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        runner.close()


if __name__ == "__main__":
    main()
