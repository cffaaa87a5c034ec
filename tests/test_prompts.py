import unittest

from sahay.config import DOMAINS
from sahay.prompts import INSTRUCTIONS, DomainPromptCatalog


class TestDomainPromptCatalog(unittest.TestCase):
    def setUp(self):
        self.catalog = DomainPromptCatalog()

    def test_every_domain_has_auto_fallback(self):
        for domain in DOMAINS:
            self.assertIn("auto", INSTRUCTIONS[domain], domain)
            self.assertTrue(self.catalog.greeting_for(domain), domain)

    def test_language_specific_instruction(self):
        self.assertIn("Respond ONLY in English", self.catalog.instruction_for("legal", "en"))
        self.assertIn("केवल हिंदी", self.catalog.instruction_for("legal", "hi"))

    def test_unknown_language_falls_back_to_auto(self):
        self.assertEqual(self.catalog.instruction_for("health", "ta"), INSTRUCTIONS["health"]["auto"])
        self.assertEqual(self.catalog.instruction_for("health", None), INSTRUCTIONS["health"]["auto"])

    def test_helplines_present(self):
        self.assertIn("108", self.catalog.instruction_for("health", "auto"))
        self.assertIn("1930", self.catalog.instruction_for("legal", "kn"))
        self.assertIn("112", self.catalog.instruction_for("frontline", "ml"))

    def test_unknown_domain_raises(self):
        with self.assertRaises(ValueError):
            self.catalog.instruction_for("sports", "en")

    def test_custom_table(self):
        catalog = DomainPromptCatalog({"general": {"auto": "Be kind."}})
        self.assertEqual(catalog.instruction_for("General", "hi"), "Be kind.")
        self.assertEqual(catalog.languages("general"), ["auto"])


if __name__ == "__main__":
    unittest.main()
