from .vm import VirtualMachine, VmState
from .ip_address import IPAddress, IPState
from .dns_record import DnsRecord

__all__ = ["VirtualMachine", "VmState", "IPAddress", "IPState", "DnsRecord"]
