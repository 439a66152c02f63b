import unittest

from pydantic import ValidationError

from schemas import CustomerCreate, CustomerUpdate, ProductCreate, ProductUpdate, UserCreate, UserUpdate


class SanitizedTextTests(unittest.TestCase):
    def test_markup_only_description_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            ProductUpdate(description="<b></b>")
        with self.assertRaises(ValidationError):
            ProductCreate(description="<em>ab</em>", category="Roupas")

        self.assertEqual(ProductUpdate(description="<b>Camiseta</b>").description, "Camiseta")
        self.assertIsNone(ProductUpdate(quantity=3).description)

    def test_markup_only_category_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            ProductCreate(description="Camiseta", category="<i> </i>")
        with self.assertRaises(ValidationError):
            ProductUpdate(category="<br>")

    def test_customer_name_counts_text_only(self) -> None:
        with self.assertRaises(ValidationError):
            CustomerCreate(full_name="<b>ab</b>", cpf="52998224725", whatsapp="11987654321")
        with self.assertRaises(ValidationError):
            CustomerUpdate(full_name="<p>  </p>")

        customer = CustomerCreate(full_name="<b>Ana</b> Lima", cpf="529.982.247-25", whatsapp="(11) 98765-4321")
        self.assertEqual(customer.full_name, "Ana Lima")


class UsernameTests(unittest.TestCase):
    def test_update_applies_username_rules(self) -> None:
        with self.assertRaises(ValidationError):
            UserUpdate(username="bad name!")
        with self.assertRaises(ValidationError):
            UserUpdate(username="<b>ab</b>")

        self.assertEqual(UserUpdate(username="novo.nome").username, "novo.nome")
        self.assertIsNone(UserUpdate(password="1234").username)

    def test_create_and_update_agree(self) -> None:
        for username in ("caixa_01", "maria-s", "j.silva"):
            self.assertEqual(UserCreate(username=username, password="1234").username, username)
            self.assertEqual(UserUpdate(username=username).username, username)
        with self.assertRaises(ValidationError):
            UserCreate(username="caixa 01", password="1234")


if __name__ == "__main__":
    unittest.main()
