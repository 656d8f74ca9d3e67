import unittest

from mqtt_sql_forwarder.core.translator import (
    RecordTranslator,
    InsertStatement,
    BoundValue,
    ValueKind,
    MalformedPayload,
    UnsupportedShape,
    UnsupportedValueType,
    InvalidIdentifier,
    TranslationError,
    coerce_value,
    quote_identifier,
    INT64_MAX,
    INT64_MIN,
)
from mqtt_sql_forwarder.utils.logger import SystemFailure


class TestRecordTranslator(unittest.TestCase):
    """Test suite for payload -> insert translation"""

    def setUp(self):
        self.translator = RecordTranslator(dialect='mysql')

    def test_flat_object_becomes_insert(self):
        """Test columns follow payload key order and values keep their JSON types"""
        statement = self.translator.translate('t', b'{"a": 1, "b": "x", "c": true}')

        self.assertEqual(statement.table, 't')
        self.assertEqual(statement.column_names, ['a', 'b', 'c'])
        self.assertEqual(statement.params, (1, 'x', True))
        self.assertIs(statement.params[2], True)
        self.assertEqual(
            statement.sql,
            "INSERT INTO `t` (`a`, `b`, `c`) VALUES (%s, %s, %s)"
        )

    def test_value_kinds(self):
        statement = self.translator.translate('t', b'{"a": 1, "b": "x", "c": false, "d": 2.5}')
        kinds = [bound.kind for _, bound in statement.columns]
        self.assertEqual(
            kinds,
            [ValueKind.INTEGER, ValueKind.STRING, ValueKind.BOOLEAN, ValueKind.FLOAT]
        )

    def test_float_is_not_truncated(self):
        statement = self.translator.translate('t', b'{"v": 21.75}')
        self.assertEqual(statement.params, (21.75,))

    def test_array_value_rejected(self):
        with self.assertRaises(UnsupportedValueType):
            self.translator.translate('t', b'{"a": [1, 2]}')

    def test_nested_object_rejected(self):
        with self.assertRaises(UnsupportedValueType):
            self.translator.translate('t', b'{"a": {"b": 1}}')

    def test_null_value_rejected(self):
        with self.assertRaises(UnsupportedValueType):
            self.translator.translate('t', b'{"a": null}')

    def test_top_level_string_rejected(self):
        with self.assertRaises(UnsupportedShape):
            self.translator.translate('t', b'"not-an-object"')

    def test_top_level_array_rejected(self):
        with self.assertRaises(UnsupportedShape):
            self.translator.translate('t', b'[{"a": 1}]')

    def test_empty_object_rejected(self):
        with self.assertRaises(UnsupportedShape):
            self.translator.translate('t', b'{}')

    def test_malformed_json_rejected(self):
        with self.assertRaises(MalformedPayload):
            self.translator.translate('t', b'{"a": 1')

    def test_invalid_utf8_rejected(self):
        with self.assertRaises(MalformedPayload):
            self.translator.translate('t', b'\xff\xfe{"a": 1}')

    def test_duplicate_keys_rejected(self):
        with self.assertRaises(MalformedPayload):
            self.translator.translate('t', b'{"a": 1, "a": 2}')

    def test_integer_range(self):
        statement = self.translator.translate('t', ('{"max": %d, "min": %d}' % (INT64_MAX, INT64_MIN)).encode())
        self.assertEqual(statement.params, (INT64_MAX, INT64_MIN))

        with self.assertRaises(UnsupportedValueType):
            self.translator.translate('t', ('{"big": %d}' % (INT64_MAX + 1)).encode())

    def test_oversized_integer_rejected(self):
        """Test an integer literal too long to parse is a translation error, not a crash"""
        with self.assertRaises(TranslationError):
            self.translator.translate('t', b'{"v": 1' + b'0' * 5000 + b'}')

    def test_deeply_nested_payload_rejected(self):
        payload = b'{"v": ' + b'[' * 100000 + b']' * 100000 + b'}'
        with self.assertRaises(MalformedPayload):
            self.translator.translate('t', payload)

    def test_non_finite_numbers_rejected(self):
        with self.assertRaises(UnsupportedValueType):
            self.translator.translate('t', b'{"v": NaN}')
        with self.assertRaises(UnsupportedValueType):
            self.translator.translate('t', b'{"v": Infinity}')

    def test_string_payload_accepted(self):
        statement = self.translator.translate('t', '{"name": "café"}')
        self.assertEqual(statement.params, ('café',))

    def test_values_are_never_inlined(self):
        """Test hostile string values only ever appear as bound parameters"""
        statement = self.translator.translate('t', b'{"a": "x\'); DROP TABLE t; --"}')
        self.assertNotIn('DROP', statement.sql)
        self.assertEqual(statement.params, ("x'); DROP TABLE t; --",))

    def test_column_with_quote_rejected(self):
        with self.assertRaises(InvalidIdentifier):
            self.translator.translate('t', b'{"a`b": 1}')

    def test_table_with_quote_rejected(self):
        with self.assertRaises(InvalidIdentifier):
            self.translator.translate('bad`table', b'{"a": 1}')

    def test_percent_in_column_rejected(self):
        """Test '%' never reaches the statement text, where drivers read it as a marker"""
        for dialect in ('mysql', 'postgresql'):
            translator = RecordTranslator(dialect=dialect)
            for payload in (b'{"rate%": 1}', b'{"a%s": 1}', b'{"v": 1, "%(x)s": 2}'):
                with self.subTest(dialect=dialect, payload=payload):
                    with self.assertRaises(InvalidIdentifier):
                        translator.translate('t', payload)

    def test_percent_in_table_rejected(self):
        with self.assertRaises(InvalidIdentifier):
            self.translator.translate('load%', b'{"v": 1}')

    def test_percent_in_value_is_bound(self):
        statement = self.translator.translate('t', b'{"v": "100%s"}')
        self.assertEqual(statement.sql, "INSERT INTO `t` (`v`) VALUES (%s)")
        self.assertEqual(statement.params, ('100%s',))

    def test_topic_style_table_is_quoted(self):
        statement = self.translator.translate('sensors/temp', b'{"v": 1}')
        self.assertTrue(statement.sql.startswith("INSERT INTO `sensors/temp` "))

    def test_postgresql_quoting(self):
        translator = RecordTranslator(dialect='postgresql')
        statement = translator.translate('readings', b'{"v": 1}')
        self.assertEqual(statement.sql, 'INSERT INTO "readings" ("v") VALUES (%s)')

        # A backtick is an ordinary character for PostgreSQL
        translator.translate('readings', b'{"a`b": 1}')
        with self.assertRaises(InvalidIdentifier):
            translator.translate('readings', b'{"a\\"b": 1}')

    def test_unknown_dialect(self):
        with self.assertRaises(ValueError):
            RecordTranslator(dialect='sqlite')

    def test_errors_carry_failure_category(self):
        with self.assertRaises(TranslationError) as ctx:
            self.translator.translate('t', b'not json')
        self.assertEqual(ctx.exception.system_failure, SystemFailure.MALFORMED_PAYLOAD)


class TestHelpers(unittest.TestCase):

    def test_coerce_bool_before_int(self):
        self.assertEqual(coerce_value('a', True), BoundValue(ValueKind.BOOLEAN, True))
        self.assertEqual(coerce_value('a', 1), BoundValue(ValueKind.INTEGER, 1))

    def test_quote_identifier(self):
        self.assertEqual(quote_identifier('temp', '`'), '`temp`')
        with self.assertRaises(InvalidIdentifier):
            quote_identifier('', '`')
        with self.assertRaises(InvalidIdentifier):
            quote_identifier('a\x00b', '`')
        with self.assertRaises(InvalidIdentifier):
            quote_identifier('a%b', '"')

    def test_insert_statement_as_dict(self):
        statement = InsertStatement(
            table='t',
            columns=(('a', BoundValue(ValueKind.INTEGER, 1)), ('b', BoundValue(ValueKind.STRING, 'x')))
        )
        self.assertEqual(statement.as_dict(), {'a': 1, 'b': 'x'})


if __name__ == '__main__':
    unittest.main()
