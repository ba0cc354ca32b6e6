"""Integration tests loaded by the CLI tests through --load."""

from vmi_harness.registry import integration_test
from vmi_harness.session import SessionHandle


@integration_test(name="sample_vcpu_count")
def sample_vcpu_count(handle: SessionHandle) -> None:
    assert handle.identity.vcpu_count == 2, f"expected 2 vCPUs, got {handle.identity.vcpu_count}"
