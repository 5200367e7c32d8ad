"""
Tests for decode_log -- mapping raw ledger logs to event variants.

Covers:
- Every event name decodes to its variant with normalized arguments
- Alternate argument spellings (childBatchId/newBatchId, recipient/to)
- Hex and string integers; negative, boolean and missing values
- StatusUpdate by contract index and by name
- BulkBatchCreated in both payload shapes
- Unknown names and malformed payloads become UnknownEvent, never raise
"""

import pytest

from pharmatrace.domain.events import (
    BatchCreated,
    BatchRecalled,
    BatchSplit,
    BatchTransfer,
    BulkBatchCreated,
    MetadataAdded,
    StatusUpdate,
    Transfer,
    TransferInitiated,
    UnknownEvent,
    audit_args,
    decode_log,
    extract_financials,
)
from pharmatrace.domain.status import BatchStatus

from fakes import DISTRIBUTOR, MANUFACTURER, raw


class TestKnownEvents:

    def test_batch_created_with_descriptive_fields(self):
        event = decode_log(raw("BatchCreated", args={
            "batchId": 1,
            "manufacturer": "0xABCDEFabcdef0000000000000000000000000001",
            "quantity": "100",
            "batchNumber": "BN-1",
            "productName": "Paracetamol",
            "dosageStrength": "500mg",
            "expiryDate": "2026-12-31",
        }))

        assert isinstance(event, BatchCreated)
        assert event.batch_id == 1
        assert event.quantity == 100
        assert event.manufacturer == "0xabcdefabcdef0000000000000000000000000001"
        assert event.batch_number == "BN-1"
        assert event.descriptive == {
            "product_name": "Paracetamol",
            "strength": "500mg",
            "expiry_date": "2026-12-31",
        }

    def test_split_accepts_alternate_argument_names(self):
        event = decode_log(raw("BatchSplit", args={
            "batchId": 1, "newBatchId": 2, "to": DISTRIBUTOR, "quantity": 40,
        }))

        assert isinstance(event, BatchSplit)
        assert (event.parent_batch_id, event.child_batch_id) == (1, 2)
        assert event.recipient == DISTRIBUTOR
        assert event.batch_id == 1

    def test_transfer_initiated_quantity_is_optional(self):
        event = decode_log(raw("TransferInitiated", args={
            "batchId": 3, "from": MANUFACTURER, "to": DISTRIBUTOR,
        }))

        assert isinstance(event, TransferInitiated)
        assert event.quantity is None

    def test_transfer_with_partial_fields(self):
        event = decode_log(raw("Transfer", args={
            "batchId": 3, "from": MANUFACTURER, "to": DISTRIBUTOR, "quantity": 10, "newBatchId": 9,
        }))

        assert isinstance(event, Transfer)
        assert (event.quantity, event.new_batch_id) == (10, 9)

    def test_batch_transfer(self):
        event = decode_log(raw("BatchTransfer", args={
            "parentBatchId": 1, "newBatchId": 5, "from": MANUFACTURER, "to": DISTRIBUTOR, "quantity": 7,
        }))

        assert isinstance(event, BatchTransfer)
        assert event.batch_id == 1
        assert event.new_batch_id == 5

    @pytest.mark.parametrize("value,expected", [
        (0, BatchStatus.CREATED),
        (1, BatchStatus.IN_TRANSIT),
        (2, BatchStatus.DELIVERED),
        (3, BatchStatus.RECALLED),
        (4, BatchStatus.SOLD),
        ("2", BatchStatus.DELIVERED),
        ("in_transit", BatchStatus.IN_TRANSIT),
    ])
    def test_status_update_by_index_or_name(self, value, expected):
        event = decode_log(raw("StatusUpdate", args={"batchId": 1, "status": value}))

        assert isinstance(event, StatusUpdate)
        assert event.status == expected

    def test_metadata_added(self):
        event = decode_log(raw("MetadataAdded", args={
            "batchId": 1, "ipfsHash": "QmHash", "addedBy": MANUFACTURER, "storageTemp": "2-8C",
        }))

        assert isinstance(event, MetadataAdded)
        assert event.fields == {"storage_temp": "2-8C"}

    def test_batch_recalled_without_reason(self):
        event = decode_log(raw("BatchRecalled", args={"batchId": 1, "recalledBy": MANUFACTURER}))

        assert isinstance(event, BatchRecalled)
        assert event.reason == ""

    def test_hex_integers(self):
        event = decode_log(raw("BatchCreated", args={
            "batchId": "0x1f", "manufacturer": MANUFACTURER, "quantity": "0x64",
        }))

        assert (event.batch_id, event.quantity) == (31, 100)


class TestBulkCreation:

    def test_items_payload(self):
        event = decode_log(raw("BulkBatchCreated", args={
            "manufacturer": MANUFACTURER,
            "items": [
                {"batchId": 10, "quantity": 5, "batchNumber": "BN-10"},
                {"batchId": 11, "quantity": 6},
            ],
        }))

        assert isinstance(event, BulkBatchCreated)
        assert [i.batch_id for i in event.items] == [10, 11]
        assert event.items[0].batch_number == "BN-10"
        assert event.batch_id == 10

    def test_range_payload(self):
        event = decode_log(raw("BulkBatchCreated", args={
            "manufacturer": MANUFACTURER, "firstBatchId": 20, "count": 3, "quantity": 50,
        }))

        assert [i.batch_id for i in event.items] == [20, 21, 22]
        assert all(i.quantity == 50 for i in event.items)

    def test_duplicate_ids_rejected(self):
        event = decode_log(raw("BulkBatchCreated", args={
            "manufacturer": MANUFACTURER,
            "items": [{"batchId": 1, "quantity": 5}, {"batchId": 1, "quantity": 6}],
        }))

        assert isinstance(event, UnknownEvent)
        assert "duplicate" in event.reason

    def test_zero_count_rejected(self):
        event = decode_log(raw("BulkBatchCreated", args={
            "manufacturer": MANUFACTURER, "firstBatchId": 20, "count": 0, "quantity": 50,
        }))

        assert isinstance(event, UnknownEvent)


class TestMalformedLogs:

    def test_unrecognized_event_name(self):
        event = decode_log(raw("OwnershipTransferred", args={"batchId": 1}))

        assert isinstance(event, UnknownEvent)
        assert event.raw_event_name == "OwnershipTransferred"
        assert event.event_name is None

    def test_missing_event_name(self):
        event = decode_log(raw(None))

        assert isinstance(event, UnknownEvent)

    def test_missing_required_argument_keeps_batch_id(self):
        event = decode_log(raw("BatchCreated", args={"batchId": 4, "quantity": 1}))

        assert isinstance(event, UnknownEvent)
        assert "manufacturer" in event.reason
        assert event.batch_id == 4

    @pytest.mark.parametrize("quantity", [-1, True, "lots", 1.5j])
    def test_bad_integers(self, quantity):
        event = decode_log(raw("BatchCreated", args={
            "batchId": 1, "manufacturer": MANUFACTURER, "quantity": quantity,
        }))

        assert isinstance(event, UnknownEvent)

    @pytest.mark.parametrize("status", [5, -1, "SHIPPED"])
    def test_bad_status(self, status):
        event = decode_log(raw("StatusUpdate", args={"batchId": 1, "status": status}))

        assert isinstance(event, UnknownEvent)

    def test_empty_ipfs_hash(self):
        event = decode_log(raw("MetadataAdded", args={
            "batchId": 1, "ipfsHash": "", "addedBy": MANUFACTURER,
        }))

        assert isinstance(event, UnknownEvent)


class TestAuditPayload:

    def test_enums_are_serialized_by_value(self):
        event = decode_log(raw("StatusUpdate", args={"batchId": 1, "status": 1}))

        assert audit_args(event) == {"batch_id": 1, "status": "IN_TRANSIT"}

    def test_financial_fields_are_not_descriptive(self):
        event = decode_log(raw("BatchCreated", args={
            "batchId": 1, "manufacturer": MANUFACTURER, "quantity": 1, "baseUnitCost": "1.20",
        }))

        assert "base_unit_cost" not in str(audit_args(event))
        assert extract_financials({"baseUnitCost": "1.20", "currency": "USD"}) == {
            "base_unit_cost": "1.20", "currency": "USD",
        }
