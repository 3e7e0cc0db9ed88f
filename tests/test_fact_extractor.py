import unittest

import rustsentry

Kind = rustsentry.StatementKind


def extract(source: str) -> rustsentry.UnitFacts:
    unit = rustsentry.load_source_unit("contract.rs", source)
    return rustsentry.extract(unit.root)


def function(facts: rustsentry.UnitFacts, name: str) -> rustsentry.FunctionFact:
    return next(fn for fn in facts.functions if fn.name == name)


class FunctionHeaderTests(unittest.TestCase):
    def test_visibility_owner_receiver_and_modifiers(self) -> None:
        facts = extract(
            """
            pub struct Token { owner: AccountId }
            impl Token {
                pub fn new(owner: AccountId) -> Self { Self { owner } }
                pub async fn refresh(&mut self) {}
                pub(crate) fn helper(&self, amount: u128) -> u128 { amount }
            }
            """
        )
        self.assertEqual([fn.name for fn in facts.functions], ["new", "refresh", "helper"])

        new = function(facts, "new")
        self.assertTrue(new.is_public)
        self.assertTrue(new.is_constructor)
        self.assertEqual(new.owner, "Token")
        self.assertIsNone(new.receiver)
        self.assertEqual([(p.name, p.type_text) for p in new.params], [("owner", "AccountId")])

        refresh = function(facts, "refresh")
        self.assertIn("async", refresh.modifiers)
        self.assertEqual(refresh.receiver, "&mut self")

        helper = function(facts, "helper")
        self.assertFalse(helper.is_public)
        self.assertEqual(helper.param_names, {"amount"})

        self.assertEqual(facts.structs[0].name, "Token")
        self.assertEqual(facts.structs[0].field_type("owner"), "AccountId")

    def test_closures_belong_to_enclosing_function(self) -> None:
        facts = extract(
            """
            pub struct Ledger { total: u128 }
            impl Ledger {
                pub fn apply(&mut self, amounts: Vec<u128>) {
                    amounts.iter().for_each(|a| { self.total += *a; });
                }
            }
            """
        )
        self.assertEqual([fn.name for fn in facts.functions], ["apply"])
        writes = function(facts, "apply").facts_of(Kind.STATE_WRITE)
        self.assertEqual([w.field_name for w in writes], ["total"])


class ArithmeticFactTests(unittest.TestCase):
    def test_checked_and_unchecked_operations(self) -> None:
        facts = extract(
            """
            fn add(a: u64, b: Balance) -> Balance {
                let x = a + 1;
                b.checked_mul(2).unwrap()
            }
            """
        )
        arith = function(facts, "add").facts_of(Kind.ARITHMETIC)
        self.assertEqual(
            [(f.op, f.width, f.checked) for f in arith],
            [("+", "u64", False), ("checked_mul", "u128", True)],
        )
        self.assertEqual(arith[0].provenance, {"caller"})
        self.assertEqual(len(arith[0].operand_spans), 2)

    def test_attached_deposit_is_caller_controlled_when_payable(self) -> None:
        facts = extract(
            """
            pub struct Vault { fees: u128 }
            impl Vault {
                #[payable]
                pub fn deposit(&mut self) -> u128 { env::attached_deposit() * 2 }
                pub fn quote(&self) -> u128 { env::attached_deposit() * 2 }
            }
            """
        )
        deposit = function(facts, "deposit")
        self.assertIn("payable", deposit.modifiers)
        self.assertEqual(deposit.facts_of(Kind.ARITHMETIC)[0].provenance, {"caller", "external"})
        self.assertEqual(function(facts, "quote").facts_of(Kind.ARITHMETIC)[0].provenance, {"external"})

    def test_storage_width_comes_from_struct_field(self) -> None:
        facts = extract(
            """
            pub struct Bank { balances: HashMap<AccountId, u128>, supply: u64 }
            impl Bank {
                pub fn burn(&mut self, who: AccountId, amount: u64) {
                    self.supply -= amount;
                    self.balances[who] -= 1;
                }
            }
            """
        )
        arith = function(facts, "burn").facts_of(Kind.ARITHMETIC)
        self.assertEqual([(f.op, f.width) for f in arith], [("-=", "u64"), ("-=", "u128")])


class ExternalCallFactTests(unittest.TestCase):
    def test_result_consumption(self) -> None:
        facts = extract(
            """
            fn pay(to: AccountId, amount: u128) -> Result<(), Error> {
                transfer(to, amount)?;
                let sent = send(to, amount);
                assert!(sent.is_ok());
                let r = send(to, amount);
                transfer(to, amount);
                Ok(())
            }
            """
        )
        calls = function(facts, "pay").facts_of(Kind.EXTERNAL_CALL)
        self.assertEqual([c.callee for c in calls], ["transfer", "send", "send", "transfer"])
        self.assertEqual([c.checked for c in calls], [True, True, False, False])

    def test_awaited_call_is_external(self) -> None:
        facts = extract(
            """
            pub struct Pool { token: AccountId }
            impl Pool {
                pub async fn sync(&mut self) { self.token.refresh().await; }
            }
            """
        )
        calls = function(facts, "sync").facts_of(Kind.EXTERNAL_CALL)
        self.assertEqual(len(calls), 1)
        self.assertTrue(calls[0].is_async)
        self.assertFalse(calls[0].checked)


class LoopFactTests(unittest.TestCase):
    def test_bound_kinds(self) -> None:
        facts = extract(
            """
            const LIMIT: u32 = 10;
            pub struct S { items: Vec<u64> }
            impl S {
                pub fn loops(&mut self, n: u64, xs: Vec<u64>) {
                    for i in 0..LIMIT { }
                    for x in xs.iter() { }
                    for i in 0..n { }
                    for x in self.items.iter().take(5) { }
                    loop { }
                    let mut i = 0u32;
                    while i < 10 { i += 1; }
                }
            }
            """
        )
        self.assertEqual(facts.constants, {"LIMIT": 10})
        loops = function(facts, "loops").facts_of(Kind.LOOP)
        B = rustsentry.BoundKind
        self.assertEqual(
            [loop.bound_kind for loop in loops],
            [B.FIXED, B.COLLECTION, B.UNBOUNDED, B.FIXED, B.UNBOUNDED, B.FIXED],
        )
        self.assertEqual(loops[-1].body_size, 1)


class StorageAppendFactTests(unittest.TestCase):
    def test_dominating_constant_bound(self) -> None:
        facts = extract(
            """
            const MAX_ITEMS: usize = 100;
            pub struct Board { list: Vec<u64>, log: Vec<u64> }
            impl Board {
                pub fn add(&mut self, item: u64) {
                    if self.list.len() >= MAX_ITEMS { return; }
                    self.list.push(item);
                    self.log.push(item);
                }
            }
            """
        )
        appends = function(facts, "add").facts_of(Kind.STORAGE_APPEND)
        self.assertEqual([a.container for a in appends], ["list", "log"])
        self.assertEqual([a.has_bound_check for a in appends], [True, False])

    def test_check_inside_one_branch_does_not_dominate(self) -> None:
        facts = extract(
            """
            pub struct Board { list: Vec<u64> }
            impl Board {
                pub fn add(&mut self, item: u64, strict: bool) {
                    if strict { assert!(self.list.len() < 10); }
                    self.list.push(item);
                }
            }
            """
        )
        append = function(facts, "add").facts_of(Kind.STORAGE_APPEND)[0]
        self.assertFalse(append.has_bound_check)

    def test_only_upper_bounds_limit_growth(self) -> None:
        facts = extract(
            """
            pub struct Board { list: Vec<u64> }
            impl Board {
                pub fn below(&mut self, item: u64) { if self.list.len() < 100 { self.list.push(item); } }
                pub fn above(&mut self, item: u64) { if self.list.len() >= 100 { self.list.push(item); } }
                pub fn mirrored(&mut self, item: u64) { assert!(100 > self.list.len()); self.list.push(item); }
                pub fn floor(&mut self, item: u64) { assert!(self.list.len() > 5); self.list.push(item); }
                pub fn else_arm(&mut self, item: u64) {
                    if self.list.len() >= 100 { panic!("full"); } else { self.list.push(item); }
                }
                pub fn no_exit(&mut self, item: u64) {
                    if self.list.len() >= 100 { self.note(item); }
                    self.list.push(item);
                }
                fn note(&self, item: u64) {}
            }
            """
        )
        names = ["below", "above", "mirrored", "floor", "else_arm", "no_exit"]
        self.assertEqual(
            [function(facts, name).facts_of(Kind.STORAGE_APPEND)[0].has_bound_check for name in names],
            [True, False, True, False, True, False],
        )


class GuardFactTests(unittest.TestCase):
    def test_assertion_branch_and_helper_guards(self) -> None:
        facts = extract(
            """
            pub struct Admin { owner: AccountId, paused: bool }
            impl Admin {
                fn only_owner(&self) {
                    assert_eq!(env::predecessor_account_id(), self.owner);
                }
                pub fn set_owner(&mut self, new_owner: AccountId) {
                    self.only_owner();
                    self.owner = new_owner;
                }
                pub fn pause(&mut self) {
                    if env::predecessor_account_id() != self.owner {
                        panic!("unauthorized");
                    }
                    self.paused = true;
                }
                pub fn late(&mut self, new_owner: AccountId) {
                    self.owner = new_owner;
                    self.only_owner();
                }
            }
            """
        )
        self.assertTrue(function(facts, "only_owner").is_guarded)
        self.assertTrue(function(facts, "set_owner").is_guarded)
        self.assertTrue(function(facts, "pause").is_guarded)
        self.assertFalse(function(facts, "late").is_guarded)
        self.assertEqual(facts.call_graph["set_owner"], {"only_owner"})


if __name__ == "__main__":
    unittest.main()
