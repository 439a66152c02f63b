import json
import unittest

from models import Permission, UserRole
from permissions import (
    PermissionSet,
    allows,
    default_permissions,
    effective_permissions,
    is_malformed,
    repair_permissions,
)


class AllowsTests(unittest.TestCase):
    def test_admin_is_unrestricted(self) -> None:
        flags = PermissionSet()
        for permission in Permission:
            self.assertTrue(allows(UserRole.ADMIN, flags, permission))

    def test_manager_gets_staff_and_finance_implicitly(self) -> None:
        flags = PermissionSet()
        self.assertTrue(allows(UserRole.MANAGER, flags, Permission.FUNCIONARIOS))
        self.assertTrue(allows(UserRole.MANAGER, flags, Permission.FINANCEIRO))
        self.assertFalse(allows(UserRole.MANAGER, flags, Permission.ESTOQUE))

    def test_manager_stored_flags_add_to_implicit_ones(self) -> None:
        flags = PermissionSet(estoque=True)
        self.assertTrue(allows(UserRole.MANAGER, flags, Permission.ESTOQUE))
        self.assertFalse(allows(UserRole.MANAGER, flags, Permission.PDV))

    def test_employee_needs_explicit_flag(self) -> None:
        flags = PermissionSet(pdv=True)
        self.assertTrue(allows(UserRole.EMPLOYEE, flags, Permission.PDV))
        self.assertFalse(allows(UserRole.EMPLOYEE, flags, Permission.PRODUCTS))
        self.assertFalse(allows(UserRole.EMPLOYEE, flags, Permission.FINANCEIRO))

    def test_dashboard_is_granted_to_everyone(self) -> None:
        flags = PermissionSet(dashboard=False)
        self.assertTrue(flags.dashboard)
        for role in UserRole:
            self.assertTrue(allows(role, flags, Permission.DASHBOARD))

    def test_effective_permissions_cover_every_flag(self) -> None:
        result = effective_permissions(UserRole.MANAGER, PermissionSet())
        self.assertEqual(set(result), {p.value for p in Permission})
        self.assertTrue(result["funcionarios"])
        self.assertTrue(result["dashboard"])
        self.assertFalse(result["pdv"])


class DefaultPermissionsTests(unittest.TestCase):
    def test_admin_defaults_to_everything(self) -> None:
        self.assertEqual(default_permissions(UserRole.ADMIN).granted(), set(Permission))

    def test_employee_defaults_to_dashboard_only(self) -> None:
        self.assertEqual(default_permissions(UserRole.EMPLOYEE).granted(), {Permission.DASHBOARD})


class RepairPermissionsTests(unittest.TestCase):
    def test_canonical_map_is_not_malformed(self) -> None:
        self.assertFalse(is_malformed(PermissionSet(pdv=True).to_storage()))

    def test_detects_malformed_shapes(self) -> None:
        self.assertTrue(is_malformed(None))
        self.assertTrue(is_malformed('{"pdv": true}'))
        self.assertTrue(is_malformed({"pdv": True}))
        self.assertTrue(is_malformed({**PermissionSet().to_storage(), "dashboard": False}))
        self.assertTrue(is_malformed({**PermissionSet().to_storage(), "0": "{"}))

    def test_non_bool_values_are_malformed(self) -> None:
        stored = {**PermissionSet(pdv=True).to_storage(), "pdv": None}
        self.assertTrue(is_malformed(stored))
        self.assertTrue(is_malformed({**PermissionSet().to_storage(), "reports": "yes"}))
        repaired = repair_permissions(stored)
        self.assertFalse(repaired.pdv)
        self.assertTrue(repaired.dashboard)

    def test_repairs_json_string(self) -> None:
        repaired = repair_permissions(json.dumps({"pdv": True, "reports": True}))
        self.assertTrue(repaired.pdv)
        self.assertTrue(repaired.reports)
        self.assertFalse(repaired.products)
        self.assertTrue(repaired.dashboard)

    def test_repairs_character_indexed_object(self) -> None:
        serialized = json.dumps({"pdv": True, "estoque": False})
        raw = {str(i): ch for i, ch in enumerate(serialized)}
        raw["products"] = True
        repaired = repair_permissions(raw)
        self.assertTrue(repaired.pdv)
        self.assertTrue(repaired.products)
        self.assertFalse(repaired.estoque)

    def test_repairs_unparseable_string_by_extracting_flags(self) -> None:
        repaired = repair_permissions('garbage {"pdv":true, "financeiro": true ')
        self.assertTrue(repaired.pdv)
        self.assertTrue(repaired.financeiro)

    def test_unknown_payload_falls_back_to_safe_defaults(self) -> None:
        repaired = repair_permissions(42)
        self.assertEqual(repaired.granted(), {Permission.DASHBOARD})


if __name__ == "__main__":
    unittest.main()
