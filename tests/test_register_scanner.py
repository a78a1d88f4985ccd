from __future__ import annotations

import os
import shutil
import tempfile
import unittest

import cv2
import pandas as pd

from ocr_matcher import OcrMatch, TextExtractor, TextResult
from register_scanner import (
    apply_detections,
    apply_ocr_matches,
    main,
    save_detections,
    scan_register,
    summarize_detections,
)
from roster import RosterEntry
from scan_errors import EmptyRosterError, ImageDecodeError, NoImageSuppliedError
from synthetic_register import blank_page, encode_png, three_row_register
from tick_detector import Detection, classify

ROSTER = [
    RosterEntry(id="a", name="Alice Able", group="F1"),
    RosterEntry(id="b", name="Bob Baker", group="F1"),
    RosterEntry(id="c", name="Cara Cole", group="F1"),
    RosterEntry(id="z", name="Zoe Zed", group="F2"),
]


class FixedTextExtractor(TextExtractor):
    name = "fixed"

    def __init__(self, text):
        self.text = text
        self.calls = 0

    def available(self):
        return True

    def extract_text(self, image):
        self.calls += 1
        return TextResult(ok=True, text=self.text)


class FailingTextExtractor(TextExtractor):
    name = "failing"

    def available(self):
        return True

    def extract_text(self, image):
        return TextResult.failure("recognition failed")


class ShapeRecordingTextExtractor(TextExtractor):
    name = "recording"

    def __init__(self):
        self.shapes = []

    def available(self):
        return True

    def extract_text(self, image):
        self.shapes.append(image.shape)
        return TextResult(ok=True, text="")


class RaisingTextExtractor(TextExtractor):
    name = "raising"

    def available(self):
        return True

    def extract_text(self, image):
        raise RuntimeError("provider crashed")


class TestScanRegister(unittest.TestCase):
    def setUp(self) -> None:
        self.image = encode_png(three_row_register())

    def test_ocr_success_adds_matches_and_detections(self) -> None:
        ex = FixedTextExtractor("Alice Able\nsomething else\nZoe")
        result = scan_register(self.image, ROSTER, group="F1", sensitivity=0.02, extractor=ex)
        self.assertEqual(ex.calls, 1)
        self.assertIsNone(result.ocr_error)
        self.assertEqual(result.ocr_text, "Alice Able\nsomething else\nZoe")
        # OCR matches against the whole roster, not only the group
        self.assertEqual([m.matched_person.id if m.matched_person else None for m in result.ocr_matches],
                         ["a", None, "z"])
        self.assertEqual([d.person_id for d in result.detections], ["a", "b", "c"])
        self.assertEqual([d.present for d in result.detections], [True, False, False])

    def test_ocr_failures_fall_through_to_tick_detection(self) -> None:
        expected = classify(self.image, ROSTER, scope="F1", sensitivity=0.02)
        for ex in (None, FailingTextExtractor(), RaisingTextExtractor(), TextExtractor()):
            result = scan_register(self.image, ROSTER, group="F1", sensitivity=0.02, extractor=ex)
            self.assertEqual(result.detections, expected)
            self.assertEqual(result.ocr_matches, [])
            self.assertEqual(result.ocr_text, "")
            self.assertTrue(result.ocr_error)

    def test_ocr_reads_the_full_resolution_page(self) -> None:
        ex = ShapeRecordingTextExtractor()
        result = scan_register(blank_page(width=2400, height=300), ROSTER, group="F1", extractor=ex)
        self.assertEqual(ex.shapes, [(300, 2400, 3)])
        self.assertEqual([d.present for d in result.detections], [False] * 3)

    def test_tick_detection_errors_propagate(self) -> None:
        ex = FixedTextExtractor("Alice")
        with self.assertRaises(ImageDecodeError):
            scan_register(b"not an image", ROSTER, group="F1", extractor=ex)
        with self.assertRaises(NoImageSuppliedError):
            scan_register(None, ROSTER, group="F1", extractor=ex)
        with self.assertRaises(EmptyRosterError):
            scan_register(self.image, ROSTER, group="F7", extractor=ex)
        self.assertEqual(ex.calls, 0)

    def test_to_dict_shape(self) -> None:
        d = scan_register(self.image, ROSTER, group="F1", sensitivity=0.02).to_dict()
        self.assertEqual(set(d), {"detections", "ocr_text", "ocr_matches", "ocr_error"})
        self.assertEqual(d["detections"][0]["person_id"], "a")
        self.assertIs(d["detections"][0]["present"], True)


class TestReviewHelpers(unittest.TestCase):
    def test_apply_detections_returns_new_map(self) -> None:
        statuses = {"a": "absent", "q": "present"}
        detections = [
            Detection("a", "Alice", True, 0.8),
            Detection("b", "Bob", False, 0.0),
            Detection(None, None, True, 0.9),
        ]
        updated = apply_detections(statuses, detections)
        self.assertEqual(updated, {"a": "present", "b": "absent", "q": "present"})
        self.assertEqual(statuses, {"a": "absent", "q": "present"})

    def test_apply_ocr_matches_only_marks_matched(self) -> None:
        matches = [OcrMatch("Alice", ROSTER[0]), OcrMatch("???", None)]
        self.assertEqual(apply_ocr_matches({"b": "absent"}, matches), {"a": "present", "b": "absent"})

    def test_summary_flags_weak_presents(self) -> None:
        detections = [
            Detection("a", "Alice", True, 0.8),
            Detection("b", "Bob", True, 0.1),
            Detection("c", "Cara", False, 0.0),
            Detection("d", "Dan", False, 0.05),
        ]
        summary = summarize_detections(detections, review_floor=0.3)
        self.assertEqual(summary["present"], 2)
        self.assertEqual(summary["absent"], 2)
        self.assertEqual(summary["total"], 4)
        self.assertEqual(summary["attendance_percentage"], 50.0)
        self.assertEqual(summary["needs_review"], ["Bob"])
        self.assertEqual(summarize_detections([])["attendance_percentage"], 0)


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.mkdtemp()

    def tearDown(self) -> None:
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_writes_detections_csv(self) -> None:
        image_path = os.path.join(self.tmp, "register.png")
        cv2.imwrite(image_path, three_row_register())
        roster_path = os.path.join(self.tmp, "roster.csv")
        pd.DataFrame([e.to_dict() for e in ROSTER]).to_csv(roster_path, index=False)
        out = os.path.join(self.tmp, "out", "detections.csv")

        code = main([image_path, roster_path, "--group", "F1", "--sensitivity", "0.02",
                     "--ocr", "none", "--out", out])

        self.assertEqual(code, 0)
        df = pd.read_csv(out, encoding="utf-8-sig", dtype={"person_id": str})
        self.assertEqual(list(df.columns), ["person_id", "person_name", "present", "confidence", "needs_review"])
        self.assertEqual(df["person_id"].tolist(), ["a", "b", "c"])
        self.assertEqual(df["present"].tolist(), [True, False, False])

    def test_missing_inputs_return_error_code(self) -> None:
        self.assertEqual(main([os.path.join(self.tmp, "nope.png"), "roster.csv", "--ocr", "none"]), 2)

    def test_scan_errors_return_error_code(self) -> None:
        image_path = os.path.join(self.tmp, "broken.png")
        with open(image_path, "wb") as f:
            f.write(b"broken")
        roster_path = os.path.join(self.tmp, "roster.csv")
        pd.DataFrame([e.to_dict() for e in ROSTER]).to_csv(roster_path, index=False)
        self.assertEqual(main([image_path, roster_path, "--ocr", "none"]), 1)

    def test_save_detections_marks_review(self) -> None:
        out = save_detections([Detection("a", "Alice", True, 0.1)], os.path.join(self.tmp, "d.csv"))
        df = pd.read_csv(out, encoding="utf-8-sig")
        self.assertTrue(bool(df["needs_review"][0]))


if __name__ == "__main__":
    unittest.main()
