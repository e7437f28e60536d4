import pytest

from carts import CartManager, GuestCartStore, UserCartStore, transfer_on_login
from catalog import Catalog
from errors import InsufficientStock, ItemNotFound, ProductNotFound, ValidationFailed, VariantUnavailable


def set_stock(db, sku, size, color, stock):
    db["product"].update_one(
        {"sku": sku, "variants": {"$elemMatch": {"size": size, "color": color}}},
        {"$set": {"variants.$.stock": stock}},
    )


class TestAdd:
    def test_repeated_add_merges_lines(self, guest_cart, shirt, session):
        assert guest_cart.add(shirt["id"], "M", "Blue", 2) == 1
        assert guest_cart.add(shirt["id"], "M", "Blue", 3) == 1

        assert session["cart"] == [{"product_id": shirt["id"], "size": "M", "color": "Blue", "quantity": 5}]
        assert session["cartCount"] == 1

    def test_distinct_variants_are_distinct_lines(self, guest_cart, shirt):
        guest_cart.add(shirt["id"], "M", "Blue")

        assert guest_cart.add(shirt["id"], "L", "Blue") == 2

    def test_merge_checks_combined_quantity(self, guest_cart, shirt, session):
        guest_cart.add(shirt["id"], "L", "Blue", 4)

        with pytest.raises(InsufficientStock) as exc:
            guest_cart.add(shirt["id"], "L", "Blue", 2)

        assert exc.value.available == 5
        assert session["cart"][0]["quantity"] == 4

    def test_unknown_variant(self, guest_cart, shirt):
        with pytest.raises(VariantUnavailable):
            guest_cart.add(shirt["id"], "XS", "Blue")

    def test_inactive_product(self, guest_cart, catalog, shirt):
        catalog.deactivate_product(shirt["id"])

        with pytest.raises(ProductNotFound):
            guest_cart.add(shirt["id"], "M", "Blue")

    def test_malformed_product_id(self, guest_cart):
        with pytest.raises(ProductNotFound):
            guest_cart.add("not-an-id", "M", "Blue")

    def test_quantity_must_be_positive(self, guest_cart, shirt):
        with pytest.raises(ValidationFailed):
            guest_cart.add(shirt["id"], "M", "Blue", 0)

    def test_user_cart_is_embedded_in_the_user(self, user_cart, shirt, db, user):
        user_cart.add(shirt["id"], "M", "Blue", 2)

        stored = db["user"].find_one({"email": user["email"]})
        assert stored["cart"] == [{"product_id": shirt["id"], "size": "M", "color": "Blue", "quantity": 2}]


class TestUpdateAndRemove:
    def test_update_sets_quantity(self, guest_cart, shirt, session):
        guest_cart.add(shirt["id"], "M", "Blue")

        guest_cart.update(shirt["id"], "M", "Blue", 7)

        assert session["cart"][0]["quantity"] == 7

    def test_update_to_zero_removes(self, guest_cart, shirt):
        guest_cart.add(shirt["id"], "M", "Blue")

        assert guest_cart.update(shirt["id"], "M", "Blue", 0) == 0

    def test_update_rechecks_stock(self, guest_cart, shirt):
        guest_cart.add(shirt["id"], "L", "Blue")

        with pytest.raises(InsufficientStock):
            guest_cart.update(shirt["id"], "L", "Blue", 6)

    def test_update_missing_line(self, guest_cart, shirt):
        with pytest.raises(ItemNotFound):
            guest_cart.update(shirt["id"], "M", "Blue", 1)

    def test_remove_is_idempotent(self, guest_cart, shirt):
        guest_cart.add(shirt["id"], "M", "Blue")

        assert guest_cart.remove(shirt["id"], "M", "Blue") == 0
        assert guest_cart.remove(shirt["id"], "M", "Blue") == 0

    def test_clear(self, guest_cart, shirt, jacket, session):
        guest_cart.add(shirt["id"], "M", "Blue")
        guest_cart.add(jacket["id"], "L", "Indigo")

        assert guest_cart.clear() == 0
        assert session["cart"] == []


class TestView:
    def test_priced_view(self, guest_cart, shirt):
        guest_cart.add(shirt["id"], "M", "Blue", 2)

        view = guest_cart.view()

        assert view["count"] == 1
        assert view["items"][0]["in_stock"] is True
        assert view["items"][0]["item_total"] == 59.98
        assert view["pricing"] == {"subtotal": 59.98, "tax": 6.0, "shipping": 10.0, "discount": 0.0, "total": 75.98}

    def test_variant_price_is_used(self, guest_cart, jacket):
        guest_cart.add(jacket["id"], "XL", "Black")

        assert guest_cart.view()["items"][0]["item_price"] == 90.0

    def test_understocked_line_is_flagged_not_priced(self, guest_cart, shirt, jacket, db):
        guest_cart.add(shirt["id"], "M", "Blue", 2)
        guest_cart.add(jacket["id"], "L", "Indigo", 3)
        set_stock(db, "JACKET-001", "L", "Indigo", 1)

        view = guest_cart.view()
        jacket_line = next(item for item in view["items"] if item["product_id"] == jacket["id"])

        assert jacket_line["in_stock"] is False
        assert jacket_line["available_stock"] == 1
        assert view["pricing"]["subtotal"] == 59.98

    def test_inactive_product_is_flagged(self, guest_cart, catalog, shirt):
        guest_cart.add(shirt["id"], "M", "Blue")
        catalog.deactivate_product(shirt["id"])

        item = guest_cart.view()["items"][0]

        assert item["in_stock"] is False
        assert item["product"] is None
        assert item["available_stock"] == 0


class TestTransferOnLogin:
    def test_guest_cart_moves_to_empty_user_cart(self, db, catalog, shirt, user, session):
        guest = GuestCartStore(session)
        CartManager(guest, catalog).add(shirt["id"], "M", "Blue", 2)

        result = transfer_on_login(guest, UserCartStore(db, user["id"]), catalog)

        assert result["merged"] == 1
        assert result["cart_count"] == 1
        assert [line.quantity for line in UserCartStore(db, user["id"]).load()] == [2]
        assert session["cart"] == []

    def test_quantities_are_summed(self, db, catalog, shirt, user, session, user_cart):
        user_cart.add(shirt["id"], "M", "Blue", 3)
        CartManager(GuestCartStore(session), catalog).add(shirt["id"], "M", "Blue", 2)

        transfer_on_login(GuestCartStore(session), UserCartStore(db, user["id"]), catalog)

        assert UserCartStore(db, user["id"]).load()[0].quantity == 5

    def test_lines_that_no_longer_fit_are_dropped(self, db, catalog, shirt, jacket, user, session, user_cart):
        user_cart.add(shirt["id"], "L", "Blue", 4)
        guest = CartManager(GuestCartStore(session), catalog)
        guest.add(shirt["id"], "L", "Blue", 2)
        guest.add(jacket["id"], "L", "Indigo", 1)

        result = transfer_on_login(GuestCartStore(session), UserCartStore(db, user["id"]), catalog)

        assert result["merged"] == 1
        assert [line["product_id"] for line in result["dropped"]] == [shirt["id"]]
        quantities = {line.product_id: line.quantity for line in UserCartStore(db, user["id"]).load()}
        assert quantities == {shirt["id"]: 4, jacket["id"]: 1}
        assert session["cart"] == []

    def test_empty_guest_cart_is_a_no_op(self, db, catalog, user, session):
        result = transfer_on_login(GuestCartStore(session), UserCartStore(db, user["id"]), Catalog(db))

        assert result == {"merged": 0, "dropped": [], "cart_count": 0}
