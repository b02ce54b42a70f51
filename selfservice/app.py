# selfservice/app.py
from wsgiref.simple_server import make_server
from datetime import datetime, timezone
import json
import logging
import re

from selfservice.config import Settings, load_settings
from selfservice.database import Base, create_session_factory
from selfservice.hypervisors import build_hypervisor
from selfservice.log_setup import setup_logging
from selfservice.repositories.sqlalchemy import (
    SqlalchemyDnsRecordRepository,
    SqlalchemyIPAddressRepository,
    SqlalchemyVMRepository,
)
from selfservice.services.dns_service import DnsService, TechnitiumClient
from selfservice.services.firewall_service import FirewallService, SophosClient
from selfservice.services.ip_pool_service import IPPoolService
from selfservice.services.provisioning_service import ProvisioningService, VmCreateRequest
from selfservice.utils.cache import TimedCache
from selfservice.services.exceptions import (
    AuthError,
    DnsRecordNotFoundError,
    ExternalUnavailableError,
    IPNotFoundError,
    IPPoolExhaustedError,
    ProvisioningError,
    StateConflictError,
    ValidationError,
    VmAlreadyExistsError,
    VmNotFoundError,
)

logger = logging.getLogger(__name__)


class MissingIdentityError(Exception):
    """게이트웨이가 사용자 식별 헤더를 넘기지 않았을 때"""
    code = "UNAUTHORIZED"


class AdminRequiredError(Exception):
    """관리자 전용 경로에 일반 사용자가 접근했을 때"""
    code = "FORBIDDEN"


# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        return json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError) as e:
        raise ValidationError("Invalid or missing JSON body.") from e


def get_identity(environ, admin=False):
    """업스트림 인증 게이트웨이가 설정한 헤더에서 사용자 정보를 읽습니다."""
    sid = environ.get("HTTP_X_USER_SID")
    if not sid:
        raise MissingIdentityError("Missing 'X-User-Sid' header.")
    identity = {
        "sid": sid,
        "name": environ.get("HTTP_X_USER_NAME") or sid,
        "is_admin": (environ.get("HTTP_X_USER_ADMIN") or "").lower() in ("1", "true", "yes"),
    }
    if admin and not identity["is_admin"]:
        raise AdminRequiredError("This operation requires administrator rights.")
    return identity


def parse_expiry(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"Invalid expiry date '{value}'.", field="expires_at") from e
    if parsed.tzinfo:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def vm_to_dict(vm):
    return {
        "id": vm.id,
        "vmid": vm.vmid,
        "hypervisor": vm.hypervisor,
        "name": vm.name,
        "owner": vm.owner_name,
        "description": vm.description,
        "operating_system": vm.operating_system,
        "memory_mb": vm.memory_mb,
        "cpu_cores": vm.cpu_cores,
        "disk_gb": vm.disk_gb,
        "subdomain": vm.subdomain,
        "address": vm.ip_address.address if vm.ip_address else None,
        "state": vm.state,
        "expires_at": vm.expires_at.isoformat() if vm.expires_at else None,
    }


def record_to_dict(record):
    return {
        "id": record.id,
        "vm_id": record.virtual_machine_id,
        "zone": record.zone,
        "subdomain": record.subdomain,
        "type": record.record_type,
        "value": record.record_value,
        "ttl": record.ttl,
    }


ERROR_MAP = {
    MissingIdentityError: "401 Unauthorized",
    AdminRequiredError: "403 Forbidden",
    VmNotFoundError: "404 Not Found",
    DnsRecordNotFoundError: "404 Not Found",
    IPNotFoundError: "404 Not Found",
    VmAlreadyExistsError: "409 Conflict",
    StateConflictError: "409 Conflict",
    ValidationError: "400 Bad Request",
    IPPoolExhaustedError: "503 Service Unavailable",
    AuthError: "502 Bad Gateway",
    ExternalUnavailableError: "502 Bad Gateway",
}


def handle_exception(e):
    # 가장 구체적인 클래스부터 찾음
    status = next(
        (ERROR_MAP[cls] for cls in type(e).__mro__ if cls in ERROR_MAP),
        "500 Internal Server Error",
    )
    if status.startswith("500"):
        logger.exception("Unhandled error while processing request")
        body = {"error": "Internal server error", "code": "SERVER_ERROR"}
    else:
        body = {"error": str(e), "code": getattr(e, "code", "VALIDATION_ERROR")}
        if getattr(e, "field", None):
            body["field"] = e.field
        if getattr(e, "failed_steps", None):
            body["failed_steps"] = e.failed_steps
    return status, json.dumps(body)


# --------------------------------------------------------------------------
## WSGI 애플리케이션 (의존성 주입 및 라우팅)
# --------------------------------------------------------------------------

def create_app(settings: Settings, session_factory=None, hypervisor_factory=build_hypervisor,
               firewall_client=None, dns_client=None):
    """
    설정으로 WSGI 애플리케이션을 만듭니다.

    하이퍼바이저 어댑터와 세션 캐시는 요청 사이에 공유하고,
    DB 세션과 리포지토리/서비스는 요청마다 새로 만듭니다.
    """
    if session_factory is None:
        engine, session_factory = create_session_factory(settings.database_url)
        Base.metadata.create_all(bind=engine)

    cache = TimedCache()
    hypervisors = {}
    firewall_client = firewall_client or SophosClient(
        settings.firewall, verify_tls=settings.verify_tls, timeout=settings.request_timeout
    )
    if dns_client is None and settings.dns.url:
        dns_client = TechnitiumClient(settings.dns, verify_tls=settings.verify_tls, timeout=settings.request_timeout)

    def get_hypervisor(name):
        if name not in hypervisors:
            hypervisors[name] = hypervisor_factory(name, settings, cache)
        return hypervisors[name]

    routes = [
        ('GET', r'^/v1/([a-z]+)/vms$', list_vms_handler),
        ('GET', r'^/v1/([a-z]+)/vms/all$', list_all_vms_handler),
        ('POST', r'^/v1/([a-z]+)/vms$', create_vm_handler),
        ('DELETE', r'^/v1/([a-z]+)/vms/([0-9]+)$', delete_vm_handler),
        ('GET', r'^/v1/vms/([0-9]+)/dns$', list_dns_handler),
        ('POST', r'^/v1/vms/([0-9]+)/dns$', create_dns_handler),
        ('DELETE', r'^/v1/vms/([0-9]+)/dns$', delete_dns_handler),
        ('PUT', r'^/v1/dns/([0-9]+)$', update_dns_handler),
        ('POST', r'^/v1/ip-addresses$', add_ip_addresses_handler),
    ]

    def application(environ, start_response):
        db_session = session_factory()
        try:
            # 1. 의존성 생성 (Repositories -> Services)
            vm_repo = SqlalchemyVMRepository(db_session)
            ip_pool = IPPoolService(SqlalchemyIPAddressRepository(db_session))
            firewall = FirewallService(firewall_client, settings.firewall)
            dns = None
            if dns_client is not None:
                dns = DnsService(SqlalchemyDnsRecordRepository(db_session), dns_client, settings.dns)

            def provisioning(hypervisor_name):
                return ProvisioningService(settings, vm_repo, ip_pool, get_hypervisor(hypervisor_name), firewall, dns)

            # 2. 생성된 서비스 객체들을 environ을 통해 핸들러에 전달
            environ['services'] = {
                'provisioning': provisioning,
                'vm_repo': vm_repo,
                'ip_pool': ip_pool,
                'dns': dns,
                'settings': settings,
            }

            # 3. 라우팅 및 핸들러 실행
            path = environ.get("PATH_INFO", "")
            method = environ.get("REQUEST_METHOD", "")

            handler, path_args = None, []
            for route_method, pattern, route_handler in routes:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, response_body = handler(environ, *path_args)
            else:
                status, response_body = '404 Not Found', json.dumps({'error': 'Not Found'})

        except Exception as e:
            db_session.rollback()
            status, response_body = handle_exception(e)
        finally:
            db_session.close()

        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    return application


# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

def list_vms_handler(environ, hypervisor):
    identity = get_identity(environ)
    vms = environ['services']['provisioning'](hypervisor).list_vms(identity['sid'])
    return '200 OK', json.dumps({'vms': [vm.to_dict() for vm in vms]})


def list_all_vms_handler(environ, hypervisor):
    get_identity(environ, admin=True)
    vms = environ['services']['provisioning'](hypervisor).list_all_vms()
    return '200 OK', json.dumps({'vms': [vm.to_dict() for vm in vms]})


def create_vm_handler(environ, hypervisor):
    identity = get_identity(environ)
    data = get_request_data(environ)
    request = VmCreateRequest(
        name=data.get('name'),
        memory_mb=data.get('memory_mb'),
        cpu_cores=data.get('cpu_cores'),
        disk_gb=data.get('disk_gb'),
        operating_system=data.get('operating_system'),
        description=data.get('description', ''),
        expires_at=parse_expiry(data.get('expires_at')),
        subdomain=data.get('subdomain'),
        home_ips=data.get('home_ips') or [],
    )
    vm = environ['services']['provisioning'](hypervisor).create_vm(identity['sid'], identity['name'], request)
    return '201 Created', json.dumps(vm_to_dict(vm))


def delete_vm_handler(environ, hypervisor, vm_id):
    identity = get_identity(environ)
    environ['services']['provisioning'](hypervisor).delete_vm(
        identity['sid'], int(vm_id), is_admin=identity['is_admin']
    )
    return '200 OK', json.dumps({"message": f"VM {vm_id} deleted."})


def _owned_vm(environ, vm_id):
    identity = get_identity(environ)
    vm_repo = environ['services']['vm_repo']
    if identity['is_admin']:
        vm = vm_repo.find_by_id(int(vm_id))
    else:
        vm = vm_repo.find_by_id_and_owner(int(vm_id), identity['sid'])
    if not vm:
        raise VmNotFoundError(f"VM {vm_id} not found.")
    return vm


def _dns_service(environ):
    dns = environ['services']['dns']
    if dns is None:
        raise ValidationError("DNS management is not configured.")
    return dns


def list_dns_handler(environ, vm_id):
    vm = _owned_vm(environ, vm_id)
    records = _dns_service(environ).list_records(vm.id)
    return '200 OK', json.dumps({'records': [record_to_dict(r) for r in records]})


def create_dns_handler(environ, vm_id):
    vm = _owned_vm(environ, vm_id)
    data = get_request_data(environ)
    dns = _dns_service(environ)
    record = dns.create_record(
        data.get('zone') or environ['services']['settings'].dns.zone,
        data.get('subdomain'),
        data.get('type'),
        data.get('value'),
        data.get('ttl'),
        vm.id,
    )
    return '201 Created', json.dumps(record_to_dict(record))


def delete_dns_handler(environ, vm_id):
    vm = _owned_vm(environ, vm_id)
    data = get_request_data(environ)
    dns = _dns_service(environ)
    zone = data.get('zone') or environ['services']['settings'].dns.zone
    subdomain = dns.qualify(data.get('subdomain'))
    record_type = (data.get('type') or '').upper()
    value = data.get('value') or ''
    if not any(r.zone == zone and r.subdomain == subdomain and r.record_type == record_type
               and r.record_value == value for r in dns.list_records(vm.id)):
        raise DnsRecordNotFoundError(f"DNS record {record_type} {subdomain} not found for VM {vm_id}.")
    dns.delete_record(zone, subdomain, record_type, value)
    return '204 No Content', ''


def update_dns_handler(environ, record_id):
    identity = get_identity(environ)
    dns = _dns_service(environ)
    record = dns.record_repo.find_by_id(int(record_id))
    if not record or (not identity['is_admin'] and record.virtual_machine.owner_sid != identity['sid']):
        raise DnsRecordNotFoundError(f"DNS record {record_id} not found.")
    data = get_request_data(environ)
    updated = dns.update_record(
        record.id,
        data.get('type') or record.record_type,
        data.get('value') or record.record_value,
        ttl=data.get('ttl'),
        subdomain=data.get('subdomain'),
    )
    return '200 OK', json.dumps(record_to_dict(updated))


def add_ip_addresses_handler(environ, *args):
    get_identity(environ, admin=True)
    data = get_request_data(environ)
    addresses = data.get('addresses') or []
    if not isinstance(addresses, list):
        raise ValidationError("'addresses' must be a list.", field="addresses")
    failed = environ['services']['ip_pool'].add_addresses(addresses)
    return '201 Created', json.dumps({"added": len(addresses) - len(failed), "failed": failed})


# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

def main():
    settings = load_settings()
    setup_logging(settings.log_file)
    application = create_app(settings)
    with make_server("", 8000, application) as httpd:
        logger.info("Serving student VM self-service on port 8000...")
        httpd.serve_forever()


if __name__ == "__main__":
    main()
