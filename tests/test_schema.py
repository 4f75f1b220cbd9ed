#!/usr/bin/env python3
"""
Unit tests for record validation and dataset loading.
"""

import os
import sys
import json
import shutil
import tempfile
import unittest

# Add parent directory to path to import account_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from account_sync.schema import (
    RecordValidationError, validate_records, validate_update_fields, validate_rewrites,
    load_dataset, load_update_payload
)


class TestValidateRecords(unittest.TestCase):

    def test_valid_records(self):
        records = validate_records([
            {'user_id': '1', 'email': 'a@example.com', 'first_name': 'Ada'},
            {'user_id': '2', 'email_addresses': ['b@example.com', 'c@example.com'],
             'password': '$argon2id$v=19$m=16,t=2,p=1$abc', 'password_hasher': 'argon2id',
             'public_metadata': {'role': 'admin'}},
        ])

        self.assertEqual(records[0].email_addresses, ['a@example.com'])
        self.assertEqual(records[0].first_name, 'Ada')
        self.assertEqual(records[1].password_hasher, 'argon2id')
        self.assertTrue(records[1].is_prehashed)
        self.assertEqual(records[1].public_metadata, {'role': 'admin'})

    def test_camel_case_export_accepted(self):
        records = validate_records([
            {'userId': 'u1', 'email': 'a@example.com', 'firstName': 'Ada', 'lastName': 'L',
             'password': 'digest', 'passwordHasher': 'bcrypt'},
        ])

        self.assertEqual(records[0].user_id, 'u1')
        self.assertEqual(records[0].last_name, 'L')
        self.assertEqual(records[0].password_hasher, 'bcrypt')

    def test_all_errors_reported_together(self):
        with self.assertRaises(RecordValidationError) as ctx:
            validate_records([
                {'user_id': '1', 'email': 'not-an-email'},
                {'email': 'b@example.com'},
                {'user_id': '3', 'email': 'c@example.com', 'password': 'x', 'password_hasher': 'sha1'},
                {'user_id': '1', 'email': 'd@example.com'},
                'garbage',
            ])

        errors = ctx.exception.errors
        self.assertEqual(len(errors), 5)
        self.assertTrue(any('records[0]' in e and 'invalid address' in e for e in errors))
        self.assertTrue(any('records[1].user_id is required' in e for e in errors))
        self.assertTrue(any('records[2].password_hasher' in e for e in errors))
        self.assertTrue(any('duplicated' in e for e in errors))
        self.assertTrue(any('records[4] must be a mapping' in e for e in errors))

    def test_missing_email(self):
        with self.assertRaises(RecordValidationError):
            validate_records([{'user_id': '1'}])

    def test_hasher_without_digest(self):
        with self.assertRaises(RecordValidationError):
            validate_records([{'user_id': '1', 'email': 'a@example.com', 'password_hasher': 'bcrypt'}])

    def test_metadata_must_be_mapping(self):
        with self.assertRaises(RecordValidationError):
            validate_records([{'user_id': '1', 'email': 'a@example.com', 'private_metadata': ['x']}])

    def test_dataset_must_be_list(self):
        with self.assertRaises(RecordValidationError):
            validate_records({'user_id': '1'})

    def test_unknown_fields_ignored(self):
        records = validate_records([{'user_id': '1', 'email': 'a@example.com', 'legacy_flag': True}])
        self.assertFalse(hasattr(records[0], 'legacy_flag'))


class TestValidateUpdateFields(unittest.TestCase):

    def test_partial_fields_kept(self):
        fields = validate_update_fields({'firstName': 'Ada', 'unsafe_metadata': {'a': 1}})
        self.assertEqual(fields, {'first_name': 'Ada', 'unsafe_metadata': {'a': 1}})

    def test_empty_payload(self):
        self.assertEqual(validate_update_fields(None), {})
        self.assertEqual(validate_update_fields({}), {})

    def test_credentials_not_updatable(self):
        with self.assertRaises(RecordValidationError):
            validate_update_fields({'password': 'x'})

    def test_email_format_checked(self):
        with self.assertRaises(RecordValidationError):
            validate_update_fields({'email_addresses': ['bad']})


class TestValidateRewrites(unittest.TestCase):

    def test_valid_rewrite(self):
        rewrites = validate_rewrites([{'field': 'username', 'pattern': '^[sc]', 'replacement': 'u'}])

        name, pattern, replacement = rewrites[0]
        self.assertEqual(name, 'username')
        self.assertEqual(pattern.sub(replacement, 'c1234', count=1), 'u1234')

    def test_invalid_rewrites(self):
        with self.assertRaises(RecordValidationError) as ctx:
            validate_rewrites([
                {'field': 'password', 'pattern': 'x'},
                {'field': 'username', 'pattern': '('},
            ])
        self.assertEqual(len(ctx.exception.errors), 2)


class TestLoadingFiles(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='account_sync_test_')

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write(self, name, content):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            f.write(content)
        return path

    def test_load_dataset(self):
        path = self.write('users.json', json.dumps([{'userId': '1', 'email': 'a@example.com'}]))
        self.assertEqual(load_dataset(path)[0].user_id, '1')

    def test_load_dataset_bad_json(self):
        path = self.write('users.json', '[{')
        with self.assertRaises(RecordValidationError):
            load_dataset(path)

    def test_load_dataset_missing_file(self):
        with self.assertRaises(RecordValidationError):
            load_dataset(os.path.join(self.temp_dir, 'missing.json'))

    def test_load_update_payload_yaml_with_rewrites(self):
        path = self.write('update.yaml', (
            "fields:\n"
            "  public_metadata:\n"
            "    migrated: true\n"
            "rewrites:\n"
            "  - field: username\n"
            "    pattern: '^[sc]'\n"
            "    replacement: u\n"
        ))

        fields, rewrites = load_update_payload(path)

        self.assertEqual(fields, {'public_metadata': {'migrated': True}})
        self.assertEqual(len(rewrites), 1)

    def test_load_update_payload_plain_mapping(self):
        path = self.write('update.json', json.dumps({'last_name': 'Smith'}))
        self.assertEqual(load_update_payload(path), ({'last_name': 'Smith'}, []))

    def test_no_payload(self):
        self.assertEqual(load_update_payload(None), ({}, []))


if __name__ == '__main__':
    unittest.main()
