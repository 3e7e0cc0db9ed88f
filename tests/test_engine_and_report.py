import io
import os
import tempfile
import threading
import unittest
from contextlib import redirect_stderr
from unittest import mock

import rustsentry

High = rustsentry.Severity.HIGH
Medium = rustsentry.Severity.MEDIUM
Low = rustsentry.Severity.LOW

SAMPLE = """
pub struct Vault { balances: HashMap<AccountId, u128>, owner: AccountId, list: Vec<u64> }
impl Vault {
    pub fn withdraw(&mut self, caller: AccountId, amount: u128) {
        transfer(caller, amount);
        self.balances[caller] -= amount;
    }
    pub fn set_owner(&mut self, owner: AccountId) { self.owner = owner; }
    pub fn add(&mut self, item: u64) {
        assert!(self.list.len() < 100);
        self.list.push(item);
    }
}
"""


def finding(rule_id, severity, start, message="m"):
    return rustsentry.Finding(
        rule_id=rule_id,
        severity=severity,
        span=rustsentry.Span(start, start + 3),
        message=message,
    )


class ExplodingDetector(rustsentry.Detector):
    rule_id = "reentrancy"
    default_severity = High

    def detect(self, function, flow_graph, unit, settings):
        raise RuntimeError("boom")


class AggregatorTests(unittest.TestCase):
    def test_dedup_order_and_counts(self) -> None:
        findings = [
            finding("float-precision", Low, 5),
            finding("storage-dos", Medium, 40),
            finding("reentrancy", High, 30),
            finding("storage-dos", Medium, 40, message="duplicate"),
            finding("overflow-underflow", High, 10),
        ]
        report = rustsentry.aggregate(findings, unit_id="u")
        self.assertEqual(
            [(f.rule_id, f.span.start) for f in report.findings],
            [
                ("overflow-underflow", 10),
                ("reentrancy", 30),
                ("storage-dos", 40),
                ("float-precision", 5),
            ],
        )
        self.assertEqual(report.findings[2].message, "m")
        self.assertEqual(report.counts, {High: 2, Medium: 1, Low: 1})
        self.assertEqual(report.unit_id, "u")

    def test_empty_input(self) -> None:
        report = rustsentry.aggregate([])
        self.assertEqual(report.findings, ())
        self.assertEqual(report.counts, {High: 0, Medium: 0, Low: 0})

    def test_same_span_different_rules_are_kept(self) -> None:
        report = rustsentry.aggregate([finding("reentrancy", High, 1), finding("overflow-underflow", High, 1)])
        self.assertEqual(report.total, 2)

    def test_counts_are_read_only(self) -> None:
        report = rustsentry.aggregate([finding("reentrancy", High, 1)])
        with self.assertRaises(TypeError):
            report.counts[High] = 5
        self.assertEqual(report.counts[High], 1)


class PipelineTests(unittest.TestCase):
    def test_sample_report(self) -> None:
        report = rustsentry.analyze_source("vault.rs", SAMPLE)
        rules = sorted(f.rule_id for f in report.findings)
        self.assertEqual(
            rules,
            [
                "missing-access-control",
                "overflow-underflow",
                "reentrancy",
                "unchecked-external-call",
            ],
        )
        self.assertEqual(report.counts[High], 3)
        self.assertEqual(report.counts[Medium], 1)
        self.assertEqual(report.warnings, ())
        self.assertTrue(all(f.suggested_fix for f in report.findings))

    def test_runs_are_deterministic(self) -> None:
        first = rustsentry.analyze_source("vault.rs", SAMPLE)
        second = rustsentry.analyze_source("vault.rs", SAMPLE)
        self.assertEqual(first, second)

    def test_detector_failure_is_isolated(self) -> None:
        engine = rustsentry.RuleEngine(
            detectors=[ExplodingDetector(), rustsentry.UncheckedExternalCallDetector()]
        )
        unit = rustsentry.load_source_unit("vault.rs", SAMPLE)
        results = engine.run(rustsentry.extract(unit.root))
        self.assertEqual([r.rule_id for r in results], ["reentrancy", "unchecked-external-call"])
        self.assertFalse(results[0].ok)
        self.assertEqual(results[0].findings, ())
        self.assertIn("boom", str(results[0].error))
        self.assertTrue(results[1].ok)
        self.assertEqual(len(results[1].findings), 1)

    def test_detector_failure_becomes_report_warning(self) -> None:
        detectors = (ExplodingDetector(), rustsentry.MissingAccessControlDetector())
        with mock.patch.object(rustsentry, "DETECTORS", detectors):
            report = rustsentry.analyze_source("vault.rs", SAMPLE)
        self.assertEqual([f.rule_id for f in report.findings], ["missing-access-control"])
        self.assertEqual([w.kind for w in report.warnings], ["detector-failure"])
        self.assertIn("reentrancy", report.warnings[0].message)

    def test_registry_covers_all_rules(self) -> None:
        self.assertEqual(len(rustsentry.RULE_IDS), 9)
        self.assertEqual(len(set(rustsentry.RULE_IDS)), 9)
        self.assertIsInstance(rustsentry.DETECTORS, tuple)


class ConcurrencyTests(unittest.TestCase):
    def test_units_in_input_order(self) -> None:
        units = [
            rustsentry.load_source_unit("a.rs", SAMPLE),
            rustsentry.load_source_unit("b.rs", "fn empty() {}"),
            rustsentry.load_source_unit("c.rs", SAMPLE),
        ]
        reports = rustsentry.analyze_units(units, max_workers=3)
        self.assertEqual([r.unit_id for r in reports], ["a.rs", "b.rs", "c.rs"])
        self.assertEqual(reports[1].total, 0)
        self.assertEqual(reports[0].findings, reports[2].findings)

    def test_cancelled_units_are_dropped(self) -> None:
        cancel = threading.Event()
        cancel.set()
        units = [rustsentry.load_source_unit("a.rs", SAMPLE)]
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            reports = rustsentry.analyze_units(units, cancel_event=cancel)
        self.assertEqual(reports, [])
        self.assertIn("[rustsentry]", stderr.getvalue())


class ConfigurationTests(unittest.TestCase):
    def test_mapping_overrides(self) -> None:
        stderr = io.StringIO()
        with redirect_stderr(stderr):
            config = rustsentry.config_from_mapping(
                {
                    "rules": {
                        "storage-dos": {"severity": "high", "max_container_size": 10},
                        "unchecked-external-call": False,
                        "reentrancy": {"severity": "critical"},
                        "no-such-rule": {},
                    }
                }
            )
        messages = stderr.getvalue()
        self.assertIn("[rustsentry] Ignoring unknown rule 'no-such-rule'", messages)
        self.assertIn("invalid severity 'critical'", messages)

        self.assertFalse(config.settings_for("unchecked-external-call").enabled)
        self.assertIsNone(config.settings_for("reentrancy").severity)
        dos = config.settings_for("storage-dos")
        self.assertEqual(dos.severity, High)
        self.assertEqual(dos.threshold("max_container_size"), 10)
        self.assertTrue(config.settings_for("float-precision").enabled)

        report = rustsentry.analyze_source("vault.rs", SAMPLE, config)
        self.assertEqual(report.findings_for("unchecked-external-call"), [])
        dos_findings = report.findings_for("storage-dos")
        self.assertEqual(len(dos_findings), 1)
        self.assertEqual(dos_findings[0].severity, High)

    def test_custom_sensitive_fields(self) -> None:
        config = rustsentry.config_from_mapping(
            {"rules": {"missing-access-control": {"sensitive_fields": ["list"]}}}
        )
        self.assertEqual(
            config.settings_for("missing-access-control").threshold("sensitive_fields"), ("list",)
        )
        report = rustsentry.analyze_source("vault.rs", SAMPLE, config)
        self.assertEqual(
            [f.function for f in report.findings_for("missing-access-control")], ["add"]
        )

    def test_non_mapping_document_is_rejected(self) -> None:
        with self.assertRaises(rustsentry.ConfigError):
            rustsentry.config_from_mapping(["storage-dos"])

    def test_load_from_yaml(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "rustsentry.yaml")
            with open(path, "w", encoding="utf-8") as handle:
                handle.write(
                    "rules:\n"
                    "  float-precision:\n"
                    "    enabled: false\n"
                    "  reentrancy:\n"
                    "    balance_fields: [escrow]\n"
                )
            config = rustsentry.load_config_from_yaml(path)
        self.assertFalse(config.settings_for("float-precision").enabled)
        self.assertEqual(config.settings_for("reentrancy").threshold("balance_fields"), ("escrow",))

        report = rustsentry.analyze_source("vault.rs", SAMPLE, config)
        self.assertEqual(report.findings_for("reentrancy"), [])

    def test_missing_and_broken_yaml(self) -> None:
        stderr = io.StringIO()
        with tempfile.TemporaryDirectory() as tmp:
            broken = os.path.join(tmp, "broken.yaml")
            with open(broken, "w", encoding="utf-8") as handle:
                handle.write("rules: [unclosed\n")
            with redirect_stderr(stderr):
                missing_config = rustsentry.load_config_from_yaml(os.path.join(tmp, "absent.yaml"))
                broken_config = rustsentry.load_config_from_yaml(broken)
        self.assertEqual(missing_config.rules, {})
        self.assertEqual(broken_config.rules, {})
        self.assertIn("Config file not found", stderr.getvalue())
        self.assertIn("Could not parse config file", stderr.getvalue())


if __name__ == "__main__":
    unittest.main()
