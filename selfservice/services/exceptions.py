# selfservice/services/exceptions.py
from typing import Optional


class ProvisioningError(Exception):
    """셀프서비스 백엔드에서 발생하는 모든 오류의 기반 클래스"""
    code = "SERVER_ERROR"


# --- Validation Exceptions (재시도 없음, 즉시 반환) ---
class ValidationError(ProvisioningError):
    """잘못된 입력, 쿼터 초과 등 요청 자체가 거부될 때"""
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

class VmQuotaExceededError(ValidationError):
    """사용자가 이미 허용된 최대 개수의 VM을 가지고 있을 때"""
    pass

class VmAlreadyExistsError(ValidationError):
    """같은 사용자에게 동일한 이름의 VM이 이미 존재할 때"""
    code = "CONFLICT"

class DomainInUseError(ValidationError):
    """최상위 서브도메인이 다른 VM에 등록되어 있을 때"""
    pass

class DuplicateRecordError(ValidationError):
    """(zone, subdomain, type, value) 레코드가 이미 존재할 때"""
    pass

class DnsQuotaExceededError(ValidationError):
    """VM이 허용된 개수보다 많은 최상위 서브도메인을 만들려고 할 때"""
    pass

class UnsupportedRecordTypeError(ValidationError):
    """지원하지 않는 DNS 레코드 타입일 때"""
    pass

class InvalidRecordValueError(ValidationError):
    """레코드 값이 타입별 형식과 맞지 않을 때"""
    pass


# --- Auth Exceptions ---
class AuthError(ProvisioningError):
    """외부 컨트롤러에 대한 인증/세션 실패"""
    code = "AUTH_ERROR"

class HypervisorAuthError(AuthError):
    """하이퍼바이저 인증 실패. VM이 이미 만들어진 뒤라면 vmid에 그 ID가 담김"""
    def __init__(self, message: str, vmid: Optional[str] = None):
        super().__init__(message)
        self.vmid = vmid

class FirewallAuthError(AuthError):
    """방화벽 컨트롤러 인증 실패"""
    pass


# --- External Unavailable Exceptions (보상 트랜잭션 유발) ---
class ExternalUnavailableError(ProvisioningError):
    """하이퍼바이저/방화벽/DNS와의 통신 실패 또는 타임아웃"""
    code = "SERVER_ERROR"

class HypervisorError(ExternalUnavailableError):
    """
    하이퍼바이저 작업 실패.

    VM이 이미 만들어진 뒤에 실패했다면 vmid에 그 ID가 담겨 있어,
    오케스트레이터가 보상으로 삭제할 수 있습니다.
    """
    def __init__(self, message: str, vmid: Optional[str] = None):
        super().__init__(message)
        self.vmid = vmid

class TemplateFetchError(HypervisorError):
    """템플릿 설정 조회 실패"""
    pass

class CloneError(HypervisorError):
    """템플릿 복제(clone/deploy) 실패"""
    pass

class ResourceConfigError(HypervisorError):
    """CPU/메모리 재설정 실패"""
    pass

class DiskResizeError(HypervisorError):
    """디스크 확장 실패"""
    pass

class HypervisorVmNotFoundError(HypervisorError):
    """하이퍼바이저에 VM이 존재하지 않을 때 (삭제 시에는 성공으로 취급)"""
    code = "NOT_FOUND"

class FirewallError(ExternalUnavailableError):
    """방화벽 컨트롤러 요청 실패"""
    pass

class DnsControllerError(ExternalUnavailableError):
    """DNS 컨트롤러 요청 실패"""
    pass

class TeardownIncompleteError(ExternalUnavailableError):
    """VM 삭제는 진행되었지만 일부 외부 자원 정리에 실패했을 때"""
    def __init__(self, message: str, failed_steps=None):
        super().__init__(message)
        self.failed_steps = list(failed_steps or [])


# --- State Conflict Exceptions (이번 시도로 변경된 것이 없음) ---
class StateConflictError(ProvisioningError):
    """다른 요청과 상태가 충돌할 때"""
    code = "CONFLICT"

class InvalidIPStateError(StateConflictError):
    """IP가 요청한 전이를 할 수 없는 상태일 때 (예: 다른 시도가 claim한 IP)"""
    pass

class HypervisorConflictError(StateConflictError):
    """하이퍼바이저에 같은 이름의 VM이 이미 있을 때"""
    pass

class VmStateConflictError(StateConflictError):
    """VM이 이미 삭제 중이거나 다른 작업 중일 때"""
    pass


# --- Not Found / Resource Exceptions ---
class VmNotFoundError(ProvisioningError):
    """원장에서 VM을 찾을 수 없을 때"""
    code = "NOT_FOUND"

class DnsRecordNotFoundError(ProvisioningError):
    """원장에서 DNS 레코드를 찾을 수 없을 때"""
    code = "NOT_FOUND"

class IPNotFoundError(ProvisioningError):
    """VM에 할당된 IP를 찾을 수 없을 때"""
    code = "NOT_FOUND"

class IPPoolExhaustedError(ProvisioningError):
    """IP 풀에 사용 가능한 주소가 없을 때"""
    code = "POOL_EXHAUSTED"
