import json
import unittest

from payment_records import (
    DELIVERY,
    DISCOUNT_FIXED,
    DISCOUNT_PERCENTAGE,
    IN_STORE,
    PAID,
    SCHEMA_VERSION,
    UNPAID,
    VOIDED,
    DeliveryInfo,
    Discount,
    LineItem,
    PaymentRecord,
    is_local_id,
    merge_documents,
    new_local_id,
    upgrade_document,
)


LEGACY_DELIVERY = {
    "id": "PAY-1",
    "customerName": "Ana",
    "createdAt": 1700000000000,
    "paid": True,
    "voided": False,
    "products": [
        {"productId": "P1", "productName": "Bilao", "price": 50, "quantity": 2},
        {"productId": "P2", "productName": "Puto", "price": 30, "quantity": 1},
    ],
    "salesType": "delivery",
    "delivery": json.dumps({"fbName": "Ana Cruz", "contactNumber": "0917", "address": "Main St", "time": "13:30"}),
    "deliveryCharge": 50,
    "deliveryLandmark": "Church",
    "discount": 10,
    "discountType": "percentage",
    "paymentMethod": "cash",
    "amountTendered": 200,
    "change": 36,
    "price": 164,
    "branchNote": "keep me",
}


class LocalIdTest(unittest.TestCase):
    def test_local_id_carries_prefix_and_timestamp(self):
        rid = new_local_id(now=1700000000000)
        self.assertTrue(rid.startswith("offline-1700000000000-"))
        suffix = int(rid.rsplit("-", 1)[1])
        self.assertTrue(0 <= suffix <= 99999)
        self.assertTrue(is_local_id(rid))

    def test_remote_ids_are_not_local(self):
        self.assertFalse(is_local_id("DOC-00001"))
        self.assertFalse(is_local_id(None))
        self.assertFalse(is_local_id(42))


class MergeDocumentsTest(unittest.TestCase):
    def test_present_keys_overwrite_and_absent_keys_survive(self):
        base = {"a": 1, "b": {"x": 1, "y": 2}, "c": "keep"}
        merged = merge_documents(base, {"b": {"z": 3}, "a": None})
        self.assertEqual(merged, {"a": None, "b": {"z": 3}, "c": "keep"})
        self.assertEqual(base["a"], 1)

    def test_missing_sides(self):
        self.assertEqual(merge_documents(None, {"a": 1}), {"a": 1})
        self.assertEqual(merge_documents({"a": 1}, None), {"a": 1})


class LegacyDocumentTest(unittest.TestCase):
    def test_legacy_delivery_sale_is_migrated(self):
        rec = PaymentRecord.from_document(LEGACY_DELIVERY)
        self.assertEqual(rec.payment_status, PAID)
        self.assertEqual(rec.sales_channel, DELIVERY)
        self.assertEqual(rec.line_items[0], LineItem("P1", "Bilao", 50.0, 2.0))
        self.assertEqual(len(rec.line_items), 2)
        self.assertEqual(rec.delivery_info.contact_name, "Ana Cruz")
        self.assertEqual(rec.delivery_info.address, "Main St")
        self.assertEqual(rec.delivery_info.landmark, "Church")
        self.assertEqual(rec.delivery_fee, 50.0)
        self.assertEqual(rec.discount, Discount(10.0, DISCOUNT_PERCENTAGE))
        self.assertEqual(rec.change_given, 36.0)
        self.assertEqual(rec.extra, {"branchNote": "keep me"})

    def test_voided_flag_wins_over_paid(self):
        rec = PaymentRecord.from_document({"id": "x", "paid": True, "voided": True})
        self.assertEqual(rec.payment_status, VOIDED)
        rec = PaymentRecord.from_document({"id": "y"})
        self.assertEqual(rec.payment_status, UNPAID)

    def test_single_service_record_becomes_one_line(self):
        rec = PaymentRecord.from_document({
            "id": "old", "serviceId": "S1", "serviceName": "Massage", "quantity": 2, "price": 300,
        })
        self.assertEqual(rec.line_items, [LineItem("S1", "Massage", 150.0, 2.0)])
        self.assertEqual(rec.sales_channel, IN_STORE)

    def test_delivery_object_is_accepted_unencoded(self):
        doc = dict(LEGACY_DELIVERY, delivery={"fbName": "Ben", "address": "Side St", "deliveryDate": "2026-03-01"})
        info = PaymentRecord.from_document(doc).delivery_info
        self.assertEqual(info.contact_name, "Ben")
        self.assertEqual(info.date, "2026-03-01")

    def test_upgrade_document_writes_current_schema(self):
        doc = upgrade_document(LEGACY_DELIVERY)
        self.assertEqual(doc["schemaVersion"], SCHEMA_VERSION)
        self.assertEqual(doc["paymentStatus"], PAID)
        self.assertEqual(doc["changeGiven"], 36.0)
        self.assertEqual(doc["deliveryInfo"]["contactName"], "Ana Cruz")
        self.assertEqual(doc["branchNote"], "keep me")
        for legacy_key in ("paid", "voided", "products", "salesType", "delivery", "change"):
            self.assertNotIn(legacy_key, doc)


class CurrentDocumentTest(unittest.TestCase):
    def test_current_document_survives_the_boundary(self):
        rec = PaymentRecord(
            id="DOC-00001",
            customer_name="Ana",
            created_at=1700000000000,
            line_items=[LineItem("P1", "Bilao", 50.0, 2.0)],
            sales_channel=DELIVERY,
            delivery_info=DeliveryInfo("Ana", "0917", "Main St", "13:30", fee=50.0),
            discount=Discount(20.0, DISCOUNT_FIXED),
            payment_status=PAID,
            payment_method="cash",
            amount_tendered=200.0,
            change_given=70.0,
            price=130.0,
            client_ref="offline-1-1",
        )
        self.assertEqual(PaymentRecord.from_document(rec.to_document()), rec)

    def test_blank_customer_defaults(self):
        rec = PaymentRecord.from_document({"schemaVersion": 2, "customerName": "  "})
        self.assertEqual(rec.customer_name, "N/A")

    def test_delivery_info_dropped_for_in_store(self):
        rec = PaymentRecord.from_document({
            "schemaVersion": 2, "salesChannel": IN_STORE, "deliveryInfo": {"address": "x", "fee": 50},
        })
        self.assertIsNone(rec.delivery_info)
        self.assertEqual(rec.delivery_fee, 0.0)

    def test_zero_or_unknown_discounts(self):
        self.assertIsNone(Discount.from_value(0))
        self.assertIsNone(Discount.from_value({"amount": 0, "kind": "percentage"}))
        self.assertEqual(Discount.from_value({"amount": 5, "kind": "bogus"}).kind, DISCOUNT_FIXED)


if __name__ == "__main__":
    unittest.main()
