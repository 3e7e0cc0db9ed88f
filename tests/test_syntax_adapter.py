import unittest

import rustsentry


def mapping_function(body_children):
    return {
        "kind": "SourceFile",
        "span": [0, 40],
        "children": [
            {
                "kind": "FunctionDef",
                "span": [0, 40],
                "children": [
                    {"kind": "Visibility", "span": [0, 3], "text": "pub"},
                    {"kind": "Identifier", "span": [7, 10], "role": "name", "text": "foo"},
                    {"kind": "Params", "span": [10, 12], "role": "parameters", "children": []},
                    {"kind": "Block", "span": [13, 40], "role": "body", "children": body_children},
                ],
            }
        ],
    }


class MappingAdapterTests(unittest.TestCase):
    def test_maps_kinds_roles_and_text(self) -> None:
        root = rustsentry.adapt(mapping_function([]))
        self.assertEqual(root.kind, rustsentry.NodeKind.SOURCE_FILE)
        fn = root.first_of(rustsentry.NodeKind.FUNCTION_DEF)
        self.assertIsNotNone(fn)
        self.assertEqual(fn.child("name").text, "foo")
        self.assertEqual(fn.child("body").kind, rustsentry.NodeKind.BLOCK)
        self.assertFalse(root.degraded)

    def test_unknown_child_is_skipped_with_warning(self) -> None:
        tree = mapping_function([{"kind": "Bogus", "span": [14, 20]}])
        warnings = []
        root = rustsentry.adapt(tree, None, warnings)
        body = root.first_of(rustsentry.NodeKind.FUNCTION_DEF).child("body")
        self.assertEqual(body.children, ())
        self.assertTrue(body.degraded)
        self.assertTrue(root.degraded)
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0].kind, "unsupported-construct")
        self.assertEqual(warnings[0].span.start, 14)

    def test_unknown_root_raises(self) -> None:
        with self.assertRaises(rustsentry.UnsupportedConstruct):
            rustsentry.adapt({"kind": "Nonsense", "span": [0, 1]})
        with self.assertRaises(rustsentry.UnsupportedConstruct):
            rustsentry.adapt(42)

    def test_unit_with_unmappable_root_yields_empty_report(self) -> None:
        unit = rustsentry.source_unit_from_tree("bad.rs", {"kind": "Nonsense", "span": [0, 1]})
        self.assertIsNone(unit.root)
        report = rustsentry.analyze_source_unit(unit)
        self.assertEqual(report.findings, ())
        self.assertEqual(report.warnings[0].kind, "unsupported-construct")

    def test_degraded_body_excludes_function(self) -> None:
        tree = mapping_function([{"kind": "Bogus", "span": [14, 20]}])
        unit = rustsentry.source_unit_from_tree("degraded.rs", tree)
        facts = rustsentry.extract(unit.root)
        self.assertEqual(facts.functions, [])
        self.assertEqual(facts.warnings[0].kind, "malformed-function")

        report = rustsentry.analyze_source_unit(unit)
        kinds = [warning.kind for warning in report.warnings]
        self.assertEqual(kinds, ["unsupported-construct", "malformed-function"])

    def test_spans_get_line_numbers_from_source(self) -> None:
        source = "fn a() {}\nfn b() {}\n"
        tree = {"kind": "SourceFile", "span": [0, len(source)], "children": [
            {"kind": "FunctionDef", "span": [10, 19], "children": []},
        ]}
        root = rustsentry.adapt(tree, source)
        fn = root.children[0]
        self.assertEqual(fn.text, "fn b() {}")
        self.assertEqual((fn.span.line_start, fn.span.col_start), (2, 1))


class TreeSitterAdapterTests(unittest.TestCase):
    def test_parses_rust_into_uniform_model(self) -> None:
        source = (
            "pub struct Vault { owner: AccountId }\n"
            "impl Vault {\n"
            "    pub fn get(&self) -> u64 { 1 + 2 }\n"
            "}\n"
        )
        unit = rustsentry.load_source_unit("vault.rs", source)
        self.assertEqual(unit.identifier, "vault.rs")
        self.assertEqual(unit.root.kind, rustsentry.NodeKind.SOURCE_FILE)
        self.assertEqual(unit.warnings, ())

        kinds = {node.kind for node in unit.root.walk()}
        self.assertIn(rustsentry.NodeKind.STRUCT_DEF, kinds)
        self.assertIn(rustsentry.NodeKind.IMPL_BLOCK, kinds)
        self.assertIn(rustsentry.NodeKind.FUNCTION_DEF, kinds)

        binary = next(node for node in unit.root.walk() if node.kind == rustsentry.NodeKind.BINARY_EXPR)
        self.assertEqual(binary.tag, "+")
        self.assertEqual(binary.text, "1 + 2")
        self.assertEqual(binary.span.line_start, 3)

    def test_custom_parser_is_used(self) -> None:
        calls = []

        def host_parser(text):
            calls.append(text)
            return {"kind": "SourceFile", "span": [0, len(text)], "children": []}

        unit = rustsentry.load_source_unit("host.rs", "// nothing", parser=host_parser)
        self.assertEqual(calls, ["// nothing"])
        self.assertEqual(unit.root.kind, rustsentry.NodeKind.SOURCE_FILE)

    def test_empty_unit_is_not_an_error(self) -> None:
        report = rustsentry.analyze_source("empty.rs", "")
        self.assertEqual(report.findings, ())
        self.assertEqual(report.warnings, ())


if __name__ == "__main__":
    unittest.main()
