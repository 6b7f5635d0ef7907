import shutil
import unittest
from pathlib import Path
from unittest.mock import patch
from uuid import uuid4

from phone_agent_desk.app_config import resolve_runtime_env
from phone_agent_desk.credentials import API_KEY_ENV_VAR, FileApiKeyStore

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class FileApiKeyStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"credentials-{uuid4().hex}"
        self._path = self._tmp_dir / "nested" / "credentials.json"

    def tearDown(self) -> None:
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def test_missing_key_is_none(self) -> None:
        self.assertIsNone(FileApiKeyStore(str(self._path)).get())
        self.assertIsNone(FileApiKeyStore(str(self._path), fallback_key="").get())

    def test_fallback_key_until_one_is_saved(self) -> None:
        store = FileApiKeyStore(str(self._path), fallback_key="from-env")
        self.assertEqual("from-env", store.get())
        store.set("  stored-key \n")
        self.assertEqual("stored-key", store.get())
        self.assertEqual("stored-key", FileApiKeyStore(str(self._path), fallback_key="from-env").get())

    def test_corrupt_file_uses_fallback(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text("{not json", encoding="utf-8")
        self.assertEqual("from-env", FileApiKeyStore(str(self._path), fallback_key="from-env").get())

    def test_environment_key_seeds_store(self) -> None:
        with patch.dict("os.environ", {API_KEY_ENV_VAR: "k-env"}):
            env = resolve_runtime_env()
        self.assertEqual("k-env", FileApiKeyStore(str(self._path), fallback_key=env.api_key).get())


if __name__ == "__main__":
    unittest.main()
