from __future__ import annotations

import hashlib
import unittest

from qrattend.services.fingerprint import (
    FingerprintMatch,
    FingerprintTraits,
    build_fingerprint_string,
    compare_fingerprints,
    fingerprint_hash,
)


class FingerprintServiceTests(unittest.TestCase):
    def _traits(self, **overrides) -> FingerprintTraits:
        payload = {
            "fp_tz": "Asia/Kolkata",
            "fp_sw": 390,
            "fp_sh": 844,
            "fp_dpr": 3,
            "fp_lang": "en-IN",
            "fp_platform": "iPhone",
        }
        payload.update(overrides)
        return FingerprintTraits.from_payload(payload)

    def test_canonical_string_keeps_field_order(self) -> None:
        self.assertEqual(
            build_fingerprint_string(self._traits()),
            "Asia/Kolkata|390|844|3|en-IN|iPhone",
        )

    def test_hash_is_sha256_of_canonical_string(self) -> None:
        expected = hashlib.sha256(b"Asia/Kolkata|390|844|3|en-IN|iPhone").hexdigest()
        self.assertEqual(fingerprint_hash(self._traits()), expected)

    def test_values_are_stripped_before_hashing(self) -> None:
        padded = self._traits(fp_tz="  Asia/Kolkata ", fp_lang="en-IN\n")
        self.assertEqual(fingerprint_hash(padded), fingerprint_hash(self._traits()))

    def test_all_blank_payload_has_no_fingerprint(self) -> None:
        blank = FingerprintTraits.from_payload({"fp_tz": " ", "fp_sw": None})
        self.assertTrue(blank.is_empty())
        self.assertIsNone(fingerprint_hash(blank))

    def test_partial_payload_still_hashes(self) -> None:
        partial = FingerprintTraits.from_payload({"fp_platform": "Win32"})
        self.assertEqual(build_fingerprint_string(partial), "|||||Win32")
        self.assertIsNotNone(fingerprint_hash(partial))

    def test_compare_outcomes(self) -> None:
        current = fingerprint_hash(self._traits())
        other = fingerprint_hash(self._traits(fp_sw=412))
        self.assertEqual(compare_fingerprints(current, current), FingerprintMatch.EXACT_MATCH)
        self.assertEqual(compare_fingerprints(current, other), FingerprintMatch.MISMATCH)
        self.assertEqual(compare_fingerprints(None, current), FingerprintMatch.NO_FINGERPRINT)
        self.assertEqual(compare_fingerprints(current, None), FingerprintMatch.NO_FINGERPRINT)
        self.assertEqual(compare_fingerprints(None, None), FingerprintMatch.NO_FINGERPRINT)


if __name__ == "__main__":
    unittest.main()
