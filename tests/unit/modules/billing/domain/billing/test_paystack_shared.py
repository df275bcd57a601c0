import pytest

from billing_engine.modules.billing.domain.billing.paystack_shared import (
    ActivationSource,
    describe_source,
    email_hash,
    reference_mapping_key,
)


@pytest.mark.parametrize("source", list(ActivationSource))
def test_every_activation_source_has_a_description(source):
    assert describe_source(source)


def test_unknown_source_is_rejected():
    with pytest.raises(ValueError):
        describe_source("carrier_pigeon")


def test_reference_mapping_key():
    assert reference_mapping_key("ref_1") == "paystack:ref:ref_1"


def test_email_hash_is_normalised():
    assert email_hash(" Payer@Example.com ") == email_hash("payer@example.com")
    assert email_hash(None) is None
