import unittest
from unittest import mock

import requests
from flask import Flask

from sharespace import config, security
from sharespace.validation import (
    ValidationError,
    clean_username,
    parse_expiry,
    parse_limit,
    parse_max_downloads,
)


class FileTypeValidationTests(unittest.TestCase):
    def test_mime_wildcards_and_extensions(self):
        allowed = ["image/*", ".csv"]
        self.assertTrue(security.validate_file_type("photo.png", "image/png", allowed))
        self.assertTrue(security.validate_file_type("data.csv", "application/vnd.ms-excel", allowed))
        self.assertFalse(security.validate_file_type("notes.txt", "text/plain", allowed))

    def test_generic_type_falls_back_to_guess(self):
        allowed = list(security.DEFAULT_ALLOWED_TYPES)
        self.assertTrue(security.validate_file_type("report.pdf", "application/octet-stream", allowed))
        self.assertTrue(security.validate_file_type("report.pdf", "", allowed))
        self.assertFalse(security.validate_file_type("blob", "application/octet-stream", allowed))

    def test_executables_are_rejected(self):
        allowed = ["application/*"]
        self.assertFalse(security.validate_file_type("a.exe", "application/x-msdownload", allowed))
        self.assertTrue(security.is_dangerous_content_type("application/x-sh; charset=binary"))

    def test_filename_rules(self):
        self.assertEqual(security.filename_error(""), "Filename cannot be empty")
        self.assertIsNotNone(security.filename_error("../etc/passwd"))
        self.assertIsNotNone(security.filename_error("a\x00b.txt"))
        self.assertIsNotNone(security.filename_error("a" * 300))
        self.assertIsNone(security.filename_error("fine.txt"))

    def test_blocked_extensions_from_environment(self):
        with mock.patch.dict("os.environ", {"SHARESPACE_BLOCKED_EXTENSIONS": ".svg, ,.EXE"}):
            error = security.filename_error("logo.svg")
            self.assertIsNotNone(security.filename_error("setup.exe"))
        self.assertIn(".svg", error)
        self.assertIsNone(security.filename_error("logo.svg"))

    def test_relative_paths_are_normalized(self):
        self.assertEqual(security.normalize_relative_path("docs/notes.txt"), "docs/notes.txt")
        self.assertEqual(security.normalize_relative_path(" docs\\sub\\a.txt "), "docs/sub/a.txt")
        self.assertEqual(security.normalize_relative_path("./docs//a.txt"), "docs/a.txt")
        for unsafe in ("", "   ", ".", "../x.txt", "a/../../x.txt", "/etc/passwd", "\\\\host\\share", "a/b\x00.txt"):
            with self.subTest(path=unsafe):
                self.assertIsNone(security.normalize_relative_path(unsafe))

    def test_file_size_bounds(self):
        self.assertFalse(security.validate_file_size(0, 10))
        self.assertTrue(security.validate_file_size(10, 10))
        self.assertFalse(security.validate_file_size(11, 10))


class TokenAndPasswordTests(unittest.TestCase):
    def test_tokens_are_unique_and_url_safe(self):
        tokens = {security.generate_secure_id() for _ in range(50)}
        self.assertEqual(len(tokens), 50)
        self.assertTrue(all("/" not in token and "+" not in token for token in tokens))
        code = security.generate_room_code()
        self.assertEqual(len(code), 8)
        self.assertTrue(code.isalnum())

    def test_password_hashing(self):
        hashed = security.hash_password("hunter2")
        self.assertNotEqual(hashed, "hunter2")
        self.assertTrue(security.verify_password(hashed, "hunter2"))
        self.assertFalse(security.verify_password(hashed, "hunter3"))
        self.assertFalse(security.verify_password(None, "hunter2"))

    def test_download_grants(self):
        grant = security.issue_download_grant("secret", "file-1")
        self.assertTrue(security.verify_download_grant("secret", grant, "file-1", 60))
        self.assertFalse(security.verify_download_grant("secret", grant, "file-2", 60))
        self.assertFalse(security.verify_download_grant("other", grant, "file-1", 60))
        self.assertFalse(security.verify_download_grant("secret", None, "file-1", 60))
        self.assertFalse(security.verify_download_grant("secret", grant, "file-1", -1))

    def test_room_grants_are_scoped(self):
        grant = security.issue_room_grant("secret", "ROOM1234")
        self.assertTrue(security.verify_room_grant("secret", grant, "ROOM1234", 60))
        self.assertFalse(security.verify_room_grant("secret", grant, "ROOM9999", 60))
        download_grant = security.issue_download_grant("secret", "ROOM1234")
        self.assertFalse(security.verify_room_grant("secret", download_grant, "ROOM1234", 60))
        self.assertFalse(security.verify_download_grant("secret", grant, "ROOM1234", 60))

    def test_log_values_are_sanitized(self):
        self.assertEqual(security.sanitize_log_value("a\nb\x01"), "a\\nb\\x01")
        self.assertEqual(security.sanitize_log_value("fake\r\nINFO ok"), "fake\\r\\nINFO ok")
        self.assertEqual(security.sanitize_log_value("café"), "café")
        self.assertEqual(security.sanitize_log_value(5), 5)


class EnvironmentSettingTests(unittest.TestCase):
    def test_integer_settings_fall_back_on_bad_values(self):
        with mock.patch.dict("os.environ", {"SHARESPACE_TEST_INT": "abc"}):
            self.assertEqual(config._env_int("SHARESPACE_TEST_INT", 7), 7)
        with mock.patch.dict("os.environ", {"SHARESPACE_TEST_INT": "-4"}):
            self.assertEqual(config._env_int("SHARESPACE_TEST_INT", 7), 1)
        with mock.patch.dict("os.environ", {"SHARESPACE_TEST_INT": " "}):
            self.assertEqual(config._env_int("SHARESPACE_TEST_INT", 7), 7)

    def test_flags_and_lists(self):
        with mock.patch.dict("os.environ", {"SHARESPACE_TEST_FLAG": "Yes"}):
            self.assertTrue(config._env_flag("SHARESPACE_TEST_FLAG"))
        with mock.patch.dict("os.environ", {"SHARESPACE_TEST_FLAG": "maybe"}):
            self.assertFalse(config._env_flag("SHARESPACE_TEST_FLAG"))
        with mock.patch.dict("os.environ", {"SHARESPACE_TEST_LIST": " a, ,b ,"}):
            self.assertEqual(config.env_list("SHARESPACE_TEST_LIST"), ["a", "b"])


class ClientIpTests(unittest.TestCase):
    def setUp(self):
        self.app = Flask(__name__)

    def test_forwarded_header_wins(self):
        with self.app.test_request_context(
            "/", headers={"X-Forwarded-For": "1.2.3.4, 10.0.0.1", "X-Real-IP": "5.6.7.8"}
        ):
            self.assertEqual(security.get_client_ip(), "1.2.3.4")

    def test_real_ip_then_remote_addr(self):
        with self.app.test_request_context("/", headers={"X-Real-IP": "5.6.7.8"}):
            self.assertEqual(security.get_client_ip(), "5.6.7.8")
        with self.app.test_request_context("/", environ_base={"REMOTE_ADDR": "9.9.9.9"}):
            self.assertEqual(security.get_client_ip(), "9.9.9.9")

    def test_outside_request(self):
        self.assertEqual(security.get_client_ip(), "unknown")


class CaptchaTests(unittest.TestCase):
    def test_successful_verification(self):
        response = mock.Mock()
        response.json.return_value = {"success": True}
        with mock.patch.object(security.requests, "post", return_value=response) as post:
            self.assertTrue(security.verify_captcha("token", "1.2.3.4"))
        self.assertEqual(post.call_args.kwargs["data"]["remoteip"], "1.2.3.4")

    def test_network_failure_rejects(self):
        with mock.patch.object(security.requests, "post", side_effect=requests.Timeout("slow")):
            self.assertFalse(security.verify_captcha("token"))
        self.assertFalse(security.verify_captcha(""))


class RequestValueParsingTests(unittest.TestCase):
    def test_parse_expiry(self):
        self.assertIsNone(parse_expiry("", 720))
        self.assertIsNone(parse_expiry("never", 720))
        self.assertEqual(parse_expiry("2", 720, now=1000.0), 1000.0 + 7200)
        for value in ("0", "-1", "nan", "inf", "soon", "721"):
            with self.subTest(value=value):
                with self.assertRaises(ValidationError):
                    parse_expiry(value, 720)

    def test_parse_max_downloads(self):
        self.assertIsNone(parse_max_downloads(None))
        self.assertEqual(parse_max_downloads("3"), 3)
        with self.assertRaises(ValidationError):
            parse_max_downloads("0")
        with self.assertRaises(ValidationError):
            parse_max_downloads("many")

    def test_parse_limit_is_clamped(self):
        self.assertEqual(parse_limit(None, 100, 500), 100)
        self.assertEqual(parse_limit("9999", 100, 500), 500)
        self.assertEqual(parse_limit("-3", 100, 500), 1)

    def test_clean_username(self):
        self.assertEqual(clean_username("  ann  "), "ann")
        with self.assertRaises(ValidationError):
            clean_username("")
        with self.assertRaises(ValidationError) as caught:
            clean_username("x" * 51)
        self.assertEqual(caught.exception.status, 400)


if __name__ == "__main__":
    unittest.main()
