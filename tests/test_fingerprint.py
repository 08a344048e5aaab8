import hashlib
import unittest

from treepress.content import compute_fingerprint


class FingerprintTests(unittest.TestCase):
    def test_empty_tree_is_hash_of_nothing(self) -> None:
        self.assertEqual(compute_fingerprint([]), hashlib.sha256(b"").hexdigest())

    def test_order_of_entries_does_not_matter(self) -> None:
        entries = [("b/content.mdx", b"two"), ("a/content.mdx", b"one")]
        self.assertEqual(compute_fingerprint(entries), compute_fingerprint(list(reversed(entries))))

    def test_any_byte_change_changes_fingerprint(self) -> None:
        base = compute_fingerprint([("a/content.mdx", b"hello")])
        self.assertNotEqual(base, compute_fingerprint([("a/content.mdx", b"hellp")]))
        self.assertNotEqual(base, compute_fingerprint([("b/content.mdx", b"hello")]))

    def test_identifier_and_content_boundaries_are_unambiguous(self) -> None:
        self.assertNotEqual(
            compute_fingerprint([("ab", b"c")]),
            compute_fingerprint([("a", b"bc")]),
        )

    def test_rendered_as_lowercase_hex(self) -> None:
        fingerprint = compute_fingerprint([("x", b"y")])
        self.assertEqual(len(fingerprint), 64)
        self.assertEqual(fingerprint, fingerprint.lower())


if __name__ == "__main__":
    unittest.main()
