import io

import pytest
from fastapi import UploadFile
from starlette.datastructures import Headers

from admin import AdminService
from database import days_ago
from errors import NotFound, UserNotFound, ValidationFailed
from storage import LocalImageStore


class TestDashboardStats:
    def test_counts_and_stock_lists(self, db, shirt, jacket, user, admin):
        db["product"].update_one({"sku": "SHIRT-001"}, {"$set": {"sold_count": 12}})

        stats = AdminService(db).dashboard_stats()

        assert stats["counts"]["users"] == 2
        assert stats["counts"]["products"] == 2
        assert stats["counts"]["categories"] == 1
        assert stats["counts"]["orders"] == 0
        assert stats["revenue"] == {"total": 0.0, "recent": 0.0}
        assert stats["top_selling_products"][0]["name"] == "Oxford Shirt"
        assert [p["name"] for p in stats["low_stock_products"]] == ["Denim Jacket"]


class TestSalesAnalytics:
    def test_daily_series_skips_cancelled_refunded_and_old_orders(self, db):
        yesterday, last_week, last_quarter = days_ago(1), days_ago(7), days_ago(90)
        db["order"].insert_many([
            {"status": "pending", "pricing": {"total": 20.5}, "created_at": yesterday},
            {"status": "delivered", "pricing": {"total": 30.25}, "created_at": yesterday},
            {"status": "cancelled", "pricing": {"total": 99.0}, "created_at": yesterday},
            {"status": "refunded", "pricing": {"total": 99.0}, "created_at": last_week},
            {"status": "shipped", "pricing": {"total": 15.0}, "created_at": last_week},
            {"status": "delivered", "pricing": {"total": 99.0}, "created_at": last_quarter},
        ])

        series = AdminService(db).sales(30)

        assert series == [
            {"date": last_week.strftime("%Y-%m-%d"), "orders": 1, "revenue": 15.0},
            {"date": yesterday.strftime("%Y-%m-%d"), "orders": 2, "revenue": 50.75},
        ]
        assert len(AdminService(db).sales(120)) == 3


class TestUserManagement:
    def test_list_with_search_and_role(self, db, user, admin):
        service = AdminService(db)

        found, total = service.list_users(search="sam")
        admins, _ = service.list_users(role="admin")

        assert total == 1
        assert found[0]["email"] == user["email"]
        assert "password_hash" not in found[0]
        assert [u["email"] for u in admins] == [admin["email"]]

    def test_set_role(self, db, user, admin):
        updated = AdminService(db).set_role(admin["id"], user["id"], "admin")

        assert updated["role"] == "admin"
        assert db["user"].find_one({"email": user["email"]})["role"] == "admin"

    def test_admin_cannot_demote_themself(self, db, admin):
        with pytest.raises(ValidationFailed):
            AdminService(db).set_role(admin["id"], admin["id"], "user")

    def test_toggle_status(self, db, user, admin):
        service = AdminService(db)

        assert service.toggle_status(admin["id"], user["id"])["is_active"] is False
        assert service.toggle_status(admin["id"], user["id"])["is_active"] is True

    def test_unknown_user(self, db, admin):
        with pytest.raises(UserNotFound):
            AdminService(db).toggle_status(admin["id"], "64b000000000000000000000")


def upload(content: bytes, filename="photo.png", content_type="image/png"):
    return UploadFile(file=io.BytesIO(content), filename=filename, headers=Headers({"content-type": content_type}))


class TestLocalImageStore:
    def test_save_and_delete(self, tmp_path):
        store = LocalImageStore(root=str(tmp_path), max_bytes=1024)

        saved = store.save(upload(b"\x89PNG fake image"))

        assert saved["url"] == f"/uploads/{saved['filename']}"
        assert saved["filename"].endswith(".png")
        assert (tmp_path / saved["filename"]).read_bytes() == b"\x89PNG fake image"

        store.delete(saved["filename"])
        assert not (tmp_path / saved["filename"]).exists()

    def test_rejects_non_images(self, tmp_path):
        with pytest.raises(ValidationFailed):
            LocalImageStore(root=str(tmp_path)).save(upload(b"%PDF", "doc.pdf", "application/pdf"))

    def test_rejects_oversized_files(self, tmp_path):
        store = LocalImageStore(root=str(tmp_path), max_bytes=10)

        with pytest.raises(ValidationFailed):
            store.save(upload(b"x" * 11))
        assert list(tmp_path.iterdir()) == []

    def test_delete_stays_inside_the_upload_root(self, tmp_path):
        store = LocalImageStore(root=str(tmp_path))

        with pytest.raises(ValidationFailed):
            store.delete("../secrets.txt")
        with pytest.raises(NotFound):
            store.delete("missing.png")
