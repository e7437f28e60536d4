import pytest
from pymongo.errors import PyMongoError

from catalog import ProductQuery, slugify, sort_sizes
from errors import CategoryNotFound, Conflict, ProductNotFound
from schemas import Category, CategoryUpdate, Product, ProductUpdate


class TestProductWrites:
    def test_total_stock_is_derived_from_variants(self, shirt, db):
        stored = db["product"].find_one({"sku": "SHIRT-001"})

        assert stored["total_stock"] == 60
        assert shirt["total_stock"] == 60

    def test_update_variants_recomputes_total_stock(self, catalog, shirt):
        updated = catalog.update_product(shirt["id"], ProductUpdate(variants=[{"size": "S", "color": "White", "stock": 7}]))

        assert updated["total_stock"] == 7
        assert updated["variants"][0]["stock"] == 7

    def test_explicit_nulls_keep_stored_values(self, catalog, shirt):
        updated = catalog.update_product(shirt["id"], ProductUpdate(name=None, price=None, variants=None, specifications=None, brand="Harbor"))

        assert updated["name"] == shirt["name"]
        assert updated["slug"] == shirt["slug"]
        assert updated["price"] == 29.99
        assert updated["total_stock"] == 60
        assert updated["specifications"]["fabric"] == "Cotton"
        assert updated["brand"] == "Harbor"

    def test_cost_price_is_never_exposed(self, catalog, shirt):
        detail = catalog.get_product(shirt["slug"], count_view=False)

        assert "cost_price" not in shirt
        assert "cost_price" not in detail["product"]

    def test_discount_percentage(self, shirt):
        assert shirt["discount_percentage"] == 25

    def test_duplicate_sku_conflicts(self, catalog, category):
        data = dict(name="Tee", description="Plain tee", price=10, sku="TEE-1", category=category["id"])
        catalog.create_product(Product(**data))

        with pytest.raises(Conflict):
            catalog.create_product(Product(**{**data, "name": "Another Tee"}))

    def test_slug_is_unique(self, catalog, category):
        first = catalog.create_product(Product(name="Linen Pants", description="x", price=40, sku="P-1", category=category["id"]))
        second = catalog.create_product(Product(name="Linen Pants", description="x", price=40, sku="P-2", category=category["id"]))

        assert first["slug"] == "linen-pants"
        assert second["slug"] == "linen-pants-2"

    def test_rename_recomputes_slug(self, catalog, shirt):
        updated = catalog.update_product(shirt["id"], ProductUpdate(name="Oxford Shirt Slim"))

        assert updated["slug"] == "oxford-shirt-slim"

    def test_unknown_category_is_rejected(self, catalog):
        with pytest.raises(CategoryNotFound):
            catalog.create_product(Product(name="Ghost", description="x", price=1, sku="G-1", category="64b000000000000000000000"))

    def test_deactivated_product_is_hidden(self, catalog, shirt):
        catalog.deactivate_product(shirt["id"])

        with pytest.raises(ProductNotFound):
            catalog.get_product(shirt["slug"])
        assert catalog.find(ProductQuery())[1] == 0


class TestProductReads:
    def test_get_by_slug_or_id(self, catalog, shirt):
        by_slug = catalog.get_product(shirt["slug"], count_view=False)
        by_id = catalog.get_product(shirt["id"], count_view=False)

        assert by_slug["product"]["id"] == by_id["product"]["id"] == shirt["id"]
        assert by_slug["product"]["category"]["name"] == "Shirts"

    def test_each_fetch_counts_one_view(self, catalog, shirt, db):
        catalog.get_product(shirt["slug"])
        catalog.get_product(shirt["slug"])
        catalog.get_product(shirt["slug"], count_view=False)

        assert db["product"].find_one({"sku": "SHIRT-001"})["view_count"] == 2

    def test_failed_view_count_never_fails_the_read(self, catalog, shirt, monkeypatch):
        def broken_update(*args, **kwargs):
            raise PyMongoError("write failed")

        monkeypatch.setattr(catalog.products, "update_one", broken_update)

        assert catalog.get_product(shirt["slug"])["product"]["id"] == shirt["id"]

    def test_related_products_share_the_category(self, catalog, shirt, jacket):
        detail = catalog.get_product(shirt["slug"], count_view=False)

        assert [p["id"] for p in detail["related_products"]] == [jacket["id"]]

    def test_filters(self, catalog, shirt, jacket):
        def names(query):
            items, _ = catalog.find(query)
            return sorted(item["name"] for item in items)

        assert names(ProductQuery(min_price=50)) == ["Denim Jacket"]
        assert names(ProductQuery(max_price=29.99)) == ["Oxford Shirt"]
        assert names(ProductQuery(size="XL")) == ["Denim Jacket"]
        assert names(ProductQuery(color="blu")) == ["Oxford Shirt"]
        assert names(ProductQuery(brand="north")) == ["Oxford Shirt"]
        assert names(ProductQuery(search="denim")) == ["Denim Jacket"]
        assert names(ProductQuery(search="cotton")) == ["Oxford Shirt"]
        assert names(ProductQuery(category=shirt["category"]["id"])) == ["Denim Jacket", "Oxford Shirt"]

    def test_search_treats_input_literally(self, catalog, shirt):
        items, total = catalog.find(ProductQuery(search="(.*"))

        assert total == 0

    def test_sort_and_pagination(self, catalog, shirt, jacket):
        low, total = catalog.find(ProductQuery(), sort="price_low", page=1, page_size=1)
        high, _ = catalog.find(ProductQuery(), sort="price_high", page=1, page_size=1)
        second, _ = catalog.find(ProductQuery(), sort="price_low", page=2, page_size=1)

        assert total == 2
        assert low[0]["name"] == "Oxford Shirt"
        assert high[0]["name"] == "Denim Jacket"
        assert second[0]["name"] == "Denim Jacket"

    def test_facets(self, catalog, shirt, jacket):
        assert catalog.sizes() == ["M", "L", "XL"]
        assert catalog.colors() == ["Black", "Blue", "Indigo"]
        assert catalog.brands() == ["Northwind", "Ridgeline"]

    def test_suggestions_need_two_characters(self, catalog, shirt):
        assert catalog.suggestions("o") == []
        assert catalog.suggestions("ox")[0]["slug"] == "oxford-shirt"


class TestCategories:
    def test_child_registers_with_parent(self, catalog, category):
        child = catalog.create_category(Category(name="Formal Shirts", parent_category=category["id"]))

        parent = catalog.subcategories(category["slug"])
        assert [c["id"] for c in parent] == [child["id"]]
        assert [c["name"] for c in catalog.main_categories()] == ["Shirts"]

    def test_duplicate_name_conflicts(self, catalog, category):
        with pytest.raises(Conflict):
            catalog.create_category(Category(name="Shirts"))

    def test_rename_recomputes_slug(self, catalog, category):
        updated = catalog.update_category(category["id"], CategoryUpdate(name="Dress Shirts"))

        assert updated["slug"] == "dress-shirts"

    def test_null_name_keeps_the_category_name(self, catalog, category):
        updated = catalog.update_category(category["id"], CategoryUpdate(name=None, description="Button-downs"))

        assert updated["name"] == "Shirts"
        assert updated["slug"] == category["slug"]
        assert updated["description"] == "Button-downs"

    def test_delete_refused_while_products_reference_it(self, catalog, category, shirt):
        with pytest.raises(Conflict):
            catalog.delete_category(category["id"])

    def test_delete_refused_while_subcategories_exist(self, catalog, category):
        catalog.create_category(Category(name="Formal Shirts", parent_category=category["id"]))

        with pytest.raises(Conflict):
            catalog.delete_category(category["id"])

    def test_delete_soft_deactivates_and_detaches(self, catalog, category, db):
        child = catalog.create_category(Category(name="Formal Shirts", parent_category=category["id"]))

        catalog.delete_category(child["id"])

        assert db["category"].find_one({"name": "Formal Shirts"})["is_active"] is False
        assert db["category"].find_one({"name": "Shirts"})["sub_categories"] == []


class TestHelpers:
    def test_slugify(self):
        assert slugify("  Men's Shirts & Tops ") == "men-s-shirts-tops"

    def test_sizes_follow_the_size_table(self):
        assert sort_sizes(["XL", "32", "S", "ONE", "M"]) == ["S", "M", "XL", "32", "ONE"]
