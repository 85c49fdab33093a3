import unittest
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

import app as app_module
from app import app, ConversationManager, CONFIG_ERROR_MESSAGE, ERROR_MESSAGES, UNAUTHORIZED_MESSAGE
from onboarding import begin_turn, record_reply


def completion(text):
    mock_resp = MagicMock()
    mock_resp.choices = [MagicMock(message=MagicMock(content=text))]
    return mock_resp


class TestAPI(unittest.TestCase):
    def setUp(self):
        self.patcher_auth_cfg = patch('app.auth_configured', return_value=True)
        self.patcher_auth_cfg.start()

        self.patcher_supabase = patch('app.supabase_client')
        self.mock_supabase = self.patcher_supabase.start()
        self.user = MagicMock(id="user-1", email="ana@example.com", user_metadata={"full_name": "Ana"})
        self.mock_supabase.return_value.auth.get_user.return_value = MagicMock(user=self.user)

        self.patcher_openai = patch('app.openai_client')
        self.mock_openai = self.patcher_openai.start()
        self.create = self.mock_openai.return_value.chat.completions.create
        self.create.return_value = completion("Mocked Answer")

        self.patcher_key = patch('app.OPENAI_API_KEY', 'sk-test-1234')
        self.patcher_key.start()

        self.patcher_convo = patch('app.conversation_manager', ConversationManager())
        self.patcher_convo.start()

        self.client = TestClient(app, cookies={"sb-access-token": "token-123"})
        self.anonymous = TestClient(app)

    def tearDown(self):
        patch.stopall()

    def post_chat(self, message, conversation_id=None):
        return self.client.post("/api/chat", json={"message": message, "conversation_id": conversation_id})

    def test_status(self):
        response = self.anonymous.get("/api/status")
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["api_key_configured"])
        self.assertIn("model", data)

    def test_index_page(self):
        response = self.anonymous.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIn("ChatApp", response.text)

    def test_chat_requires_session_cookie(self):
        response = self.anonymous.post("/api/chat", json={"message": "hola"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], UNAUTHORIZED_MESSAGE)
        self.create.assert_not_called()

    def test_chat_rejects_invalid_session(self):
        self.mock_supabase.return_value.auth.get_user.side_effect = Exception("invalid JWT")
        response = self.post_chat("hola")
        self.assertEqual(response.status_code, 401)
        self.create.assert_not_called()

    def test_handler_enforces_auth_behind_gate(self):
        # The gate lets the request through, the handler's own check rejects it.
        self.mock_supabase.return_value.auth.get_user.side_effect = [
            MagicMock(user=self.user),
            MagicMock(user=None),
        ]
        response = self.post_chat("hola")
        self.assertEqual(response.status_code, 401)
        self.create.assert_not_called()

    def test_chat_happy_path(self):
        response = self.post_chat("trabajo en Acme Corp")
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["answer"], "Mocked Answer")
        self.assertIsNone(data["error"])
        self.assertEqual(data["progress"]["completed"], 1)
        self.assertEqual(data["progress"]["fields"]["company"]["value"], "Acme Corp")

        kwargs = self.create.call_args.kwargs
        self.assertEqual(kwargs["temperature"], 0.7)
        self.assertEqual(kwargs["max_tokens"], 1000)
        self.assertEqual(kwargs["model"], app_module.OPENAI_MODEL)
        messages = kwargs["messages"]
        self.assertEqual(messages[0]["role"], "system")
        self.assertIn("✅ Empresa: Acme Corp", messages[0]["content"])
        self.assertEqual(messages[1]["role"], "assistant")
        self.assertEqual(messages[-1], {"role": "user", "content": "trabajo en Acme Corp"})

    def test_full_intake(self):
        conv_id = self.post_chat("trabajo en Acme Corp").json()["conversation_id"]
        self.post_chat("el sector es tecnología", conv_id)
        data = self.post_chat("soy ingeniero", conv_id).json()

        self.assertEqual(data["conversation_id"], conv_id)
        self.assertTrue(data["progress"]["complete"])
        self.assertEqual(data["progress"]["stage"], "complete")
        self.assertIn("Confirma con el usuario", self.create.call_args.kwargs["messages"][0]["content"])

        history = self.client.get(f"/api/chat/conversations/{conv_id}").json()
        self.assertEqual(len(history["turns"]), 7)

    def test_misconfigured_key(self):
        with patch('app.OPENAI_API_KEY', 'tu-api-key-aqui'):
            response = self.post_chat("trabajo en Acme")
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"], CONFIG_ERROR_MESSAGE)
        self.mock_openai.assert_not_called()

    def test_empty_message(self):
        response = self.post_chat("   ")
        self.assertEqual(response.status_code, 400)

    def test_quota_error_keeps_session_usable(self):
        self.create.side_effect = [Exception("You exceeded your current quota"), completion("Hola de nuevo")]
        first = self.post_chat("trabajo en Acme Corp")
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["error"], "quota")
        self.assertEqual(first.json()["answer"], ERROR_MESSAGES["quota"])

        conv_id = first.json()["conversation_id"]
        second = self.post_chat("el sector es tecnología", conv_id)
        self.assertEqual(second.status_code, 200)
        self.assertIsNone(second.json()["error"])
        self.assertEqual(second.json()["answer"], "Hola de nuevo")
        self.assertEqual(second.json()["progress"]["completed"], 2)

    def test_busy_conversation(self):
        conv_id = self.client.post("/api/chat/conversations").json()["conversation_id"]
        app_module.conversation_manager.acquire(conv_id)
        response = self.post_chat("trabajo en Acme", conv_id)
        self.assertEqual(response.status_code, 409)
        self.create.assert_not_called()

    def test_turn_finished_while_waiting_is_kept(self):
        manager = app_module.conversation_manager
        conv_id = self.client.post("/api/chat/conversations").json()["conversation_id"]
        original_acquire = manager.acquire

        def acquire_after_other_turn(cid):
            # Another request completes a whole turn between lookup and acquire.
            session = manager.load_session(cid, "user-1")
            session, _ = begin_turn(session, "trabajo en Acme Corp", "BASE")
            manager.save_session(cid, record_reply(session, "¿En qué sector?"))
            return original_acquire(cid)

        with patch.object(manager, "acquire", side_effect=acquire_after_other_turn):
            response = self.post_chat("el sector es tecnología", conv_id)
        self.assertEqual(response.status_code, 200)

        stored = manager.load_session(conv_id, "user-1")
        self.assertEqual(
            [t.content for t in stored.turns[1:]],
            ["trabajo en Acme Corp", "¿En qué sector?", "el sector es tecnología", "Mocked Answer"],
        )
        self.assertEqual(stored.info.company, "Acme Corp")
        self.assertEqual(stored.info.industry, "tecnología")
        self.assertEqual(response.json()["progress"]["completed"], 2)

    def test_logout_during_turn_does_not_resurrect_conversation(self):
        manager = app_module.conversation_manager
        conv_id = self.client.post("/api/chat/conversations").json()["conversation_id"]

        def drop_then_answer(**kwargs):
            manager.drop_user("user-1")
            return completion("Mocked Answer")

        self.create.side_effect = drop_then_answer
        response = self.post_chat("trabajo en Acme", conv_id)
        self.assertEqual(response.status_code, 200)
        self.assertNotIn(conv_id, manager._sessions)
        self.assertIsNone(manager.load_session(conv_id, "user-1"))

    def test_conversation_of_another_user(self):
        conv_id, _ = app_module.conversation_manager.create_session("user-2")
        self.assertEqual(self.post_chat("hola", conv_id).status_code, 404)
        self.assertEqual(self.client.get(f"/api/chat/conversations/{conv_id}").status_code, 404)

    def test_create_conversation(self):
        data = self.client.post("/api/chat/conversations").json()
        self.assertEqual(len(data["turns"]), 1)
        self.assertFalse(data["turns"][0]["is_user"])
        self.assertEqual(data["progress"]["stage"], "collecting_company")

    def test_connection(self):
        data = self.client.get("/api/chat/connection").json()
        self.assertTrue(data["connected"])
        messages = self.create.call_args.kwargs["messages"]
        self.assertEqual(messages, [{"role": "user", "content": "Hola, ¿estás funcionando?"}])

    def test_connection_failure(self):
        self.create.side_effect = Exception("Incorrect API key provided")
        data = self.client.get("/api/chat/connection").json()
        self.assertFalse(data["connected"])
        self.assertEqual(data["error"], "auth")

    def test_login_sets_cookie(self):
        self.mock_supabase.return_value.auth.sign_in_with_password.return_value = MagicMock(
            session=MagicMock(access_token="fresh-token", expires_in=3600),
            user=self.user,
        )
        response = self.anonymous.post("/api/auth/login", json={"email": "ana@example.com", "password": "secret1"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["user"]["email"], "ana@example.com")
        self.assertEqual(response.cookies.get("sb-access-token"), "fresh-token")

    def test_login_failure(self):
        self.mock_supabase.return_value.auth.sign_in_with_password.side_effect = Exception("Invalid login credentials")
        response = self.anonymous.post("/api/auth/login", json={"email": "ana@example.com", "password": "bad"})
        self.assertEqual(response.status_code, 401)

    def test_signup_validation(self):
        response = self.anonymous.post("/api/auth/signup", json={"email": "ana@example.com", "password": "123"})
        self.assertEqual(response.status_code, 400)
        response = self.anonymous.post("/api/auth/signup", json={"email": "bad", "password": "secret1"})
        self.assertEqual(response.status_code, 400)
        self.mock_supabase.return_value.auth.sign_up.assert_not_called()

    def test_signup(self):
        response = self.anonymous.post(
            "/api/auth/signup",
            json={"email": "ana@example.com", "password": "secret1", "full_name": "Ana"},
        )
        self.assertEqual(response.status_code, 200)
        payload = self.mock_supabase.return_value.auth.sign_up.call_args[0][0]
        self.assertEqual(payload["options"]["data"]["full_name"], "Ana")

    def test_current_user(self):
        data = self.client.get("/api/auth/user").json()
        self.assertEqual(data, {"id": "user-1", "email": "ana@example.com", "full_name": "Ana"})
        self.assertEqual(self.anonymous.get("/api/auth/user").status_code, 401)

    def test_logout_drops_conversations(self):
        conv_id = self.client.post("/api/chat/conversations").json()["conversation_id"]
        response = self.client.post("/api/auth/logout")
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(app_module.conversation_manager.load_session(conv_id, "user-1"))


if __name__ == "__main__":
    unittest.main()
