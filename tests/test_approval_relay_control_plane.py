import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import approval_relay_control_plane as cp
import approval_relay_lease as lease
import approval_relay_pending as pending_store
import approval_relay_session as session
import approval_relay_state as state
import approval_relay_trigger as trigger

CREDS = {"bot_token": "t", "user_id": "7", "source": "env"}


def _message(text: str, *, message_id: str = "7:1", sender_id: str = "7", **extra: object) -> dict:
    msg = {
        "message_id": message_id,
        "sender_id": sender_id,
        "sender_name": "Ana",
        "text": text,
        "received_at": 1000.0,
    }
    msg.update(extra)
    return msg


def _handle_target() -> dict:
    return {"method": "handle", "pane": "%3", "pane_pid": 400, "tmux_socket": "/tmp/sock"}


class TestApprovalRelayRaisePrompt(unittest.TestCase):
    def test_without_credentials_prompt_stays_local(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            send_mock = mock.MagicMock()
            route = cp.raise_prompt(
                session_dir=sdir,
                tool_name="Bash",
                tool_input={"command": "ls"},
                credentials=None,
                send_fn=send_mock,
            )
            self.assertEqual(route, "local_only")
            send_mock.assert_not_called()
            self.assertFalse((sdir / session.PENDING_FILE).exists())

    def test_forward_records_pending_and_sends_prompt(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            send_mock = mock.MagicMock(return_value=True)
            tool_input = {"questions": [{"question": "Pick", "options": [{"label": "A"}, {"label": "B"}]}]}
            route = cp.raise_prompt(
                session_dir=sdir,
                tool_name="AskUserQuestion",
                tool_input=tool_input,
                credentials=CREDS,
                send_fn=send_mock,
                now_ts=1000.0,
            )
            current = pending_store.peek_pending(session_dir=sdir, now_ts=1001.0)

        self.assertEqual(route, "forward")
        assert current is not None
        self.assertEqual(current["kind"], "question")
        self.assertEqual(current["payload"]["tool_input"], tool_input)
        self.assertIn("Claude has a question", send_mock.call_args.args[0])

    def test_send_failure_does_not_block_forwarding(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            with mock.patch.object(state, "warn_stderr"):
                route = cp.raise_prompt(
                    session_dir=sdir,
                    tool_name="Bash",
                    tool_input={"command": "ls"},
                    credentials=CREDS,
                    send_fn=mock.MagicMock(side_effect=OSError("offline")),
                )
            self.assertEqual(route, "forward")
            self.assertIsNotNone(pending_store.peek_pending(session_dir=sdir))


class TestApprovalRelayInbound(unittest.TestCase):
    def test_permission_yes_end_to_end(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            prompt_send = mock.MagicMock(return_value=True)
            route = cp.raise_prompt(
                session_dir=sdir,
                tool_name="Bash",
                tool_input={"command": "ls"},
                credentials=CREDS,
                send_fn=prompt_send,
                now_ts=1000.0,
            )
            self.assertEqual(route, "forward")
            self.assertIn("Permission Request", prompt_send.call_args.args[0])

            send_mock = mock.MagicMock(return_value=True)
            with mock.patch.object(trigger, "signal_trigger", wraps=trigger.signal_trigger) as signal_mock:
                result = cp.on_inbound_message(
                    session_dir=sdir,
                    message=_message("y"),
                    authorized_sender_id="7",
                    send_fn=send_mock,
                    now_ts=1010.0,
                )

            self.assertEqual(result["action"], "answer_pending")
            self.assertEqual(
                state.read_json(sdir / session.RESPONSE_FILE),
                {"response": "y", "prompt_type": "permission", "ts": 1010.0},
            )
            self.assertIsNone(pending_store.peek_pending(session_dir=sdir, now_ts=1010.0))
            self.assertFalse((sdir / session.PENDING_FILE).exists())
            signal_mock.assert_called_once()
            self.assertEqual(state.read_json(sdir / session.TRIGGER_FILE), {"ts": 1010.0})
            self.assertEqual(trigger.inbox_size(session_dir=sdir), 0)
            send_mock.assert_called_once_with("✅ Approved")

    def test_redelivered_answer_confirms_once(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            pending_store.put_pending(
                session_dir=sdir,
                kind="permission",
                payload={"tool_name": "Bash", "tool_input": {"command": "ls"}},
                now_ts=1000.0,
            )
            send_mock = mock.MagicMock(return_value=True)
            first = cp.on_inbound_message(
                session_dir=sdir,
                message=_message("y"),
                authorized_sender_id="7",
                send_fn=send_mock,
                now_ts=1010.0,
            )
            second = cp.on_inbound_message(
                session_dir=sdir,
                message=_message("y"),
                authorized_sender_id="7",
                send_fn=send_mock,
                now_ts=1011.0,
            )

            self.assertEqual(first["action"], "answer_pending")
            self.assertEqual(second, {"action": "duplicate"})
            send_mock.assert_called_once_with("✅ Approved")
            self.assertEqual(trigger.inbox_size(session_dir=sdir), 0)

    def test_failed_response_write_keeps_prompt_open_and_queues_reply(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            pending_store.put_pending(
                session_dir=sdir,
                kind="permission",
                payload={"tool_name": "Bash", "tool_input": {"command": "ls"}},
                now_ts=1000.0,
            )
            send_mock = mock.MagicMock(return_value=True)
            with (
                mock.patch.object(trigger, "write_response", return_value=False),
                mock.patch.object(state, "warn_stderr"),
            ):
                result = cp.on_inbound_message(
                    session_dir=sdir,
                    message=_message("y"),
                    authorized_sender_id="7",
                    send_fn=send_mock,
                    now_ts=1010.0,
                )

            self.assertEqual(result["action"], "enqueue")
            self.assertEqual(result["entry"]["text"], "y")
            send_mock.assert_not_called()
            current = pending_store.peek_pending(session_dir=sdir, now_ts=1010.0)
            assert current is not None
            self.assertEqual(current["kind"], "permission")
            self.assertEqual(trigger.inbox_size(session_dir=sdir), 1)
            self.assertTrue(trigger.trigger_present(session_dir=sdir))

    def test_unauthorized_sender_is_dropped_without_side_effects(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            result = cp.on_inbound_message(
                session_dir=sdir,
                message=_message("y", sender_id="666"),
                authorized_sender_id="7",
            )
            self.assertEqual(result, {"action": "drop"})
            self.assertEqual(list(sdir.iterdir()), [])

    def test_redelivery_is_processed_once(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            first = cp.on_inbound_message(session_dir=sdir, message=_message("hello"), authorized_sender_id="7")
            self.assertTrue(trigger.consume_trigger(session_dir=sdir))
            second = cp.on_inbound_message(session_dir=sdir, message=_message("hello"), authorized_sender_id="7")

            self.assertEqual(first["action"], "enqueue")
            self.assertEqual(second, {"action": "duplicate"})
            self.assertFalse(trigger.trigger_present(session_dir=sdir))
            self.assertEqual(trigger.inbox_size(session_dir=sdir), 1)

    def test_unmatched_reply_is_queued_and_still_wakes_watcher(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            pending_store.put_pending(session_dir=sdir, kind="permission", payload={}, now_ts=1000.0)
            result = cp.on_inbound_message(
                session_dir=sdir,
                message=_message("2"),
                authorized_sender_id="7",
                now_ts=1001.0,
            )
            self.assertEqual(result["action"], "enqueue")
            self.assertIsNotNone(pending_store.peek_pending(session_dir=sdir, now_ts=1001.0))
            self.assertTrue(trigger.trigger_present(session_dir=sdir))
            self.assertFalse((sdir / session.RESPONSE_FILE).exists())

    def test_expired_prompt_is_not_answered(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            pending_store.put_pending(session_dir=sdir, kind="permission", payload={}, now_ts=1000.0)
            result = cp.on_inbound_message(
                session_dir=sdir,
                message=_message("y"),
                authorized_sender_id="7",
                now_ts=1000.0 + pending_store.PENDING_TTL_S + 1,
            )
            self.assertEqual(result["action"], "enqueue")
            self.assertFalse((sdir / session.RESPONSE_FILE).exists())

    def test_attachment_is_downloaded_into_entry(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            image = sdir / session.IMAGES_DIR / "abc.jpg"
            download_mock = mock.MagicMock(return_value=image)
            cp.on_inbound_message(
                session_dir=sdir,
                message=_message("look", attachment_file_id="large"),
                authorized_sender_id="7",
                download_fn=download_mock,
            )
            drained = trigger.drain_inbox(session_dir=sdir)

        download_mock.assert_called_once_with("large", sdir)
        self.assertEqual(drained[0]["image_path"], str(image))


class TestApprovalRelayEnsureWatcher(unittest.TestCase):
    def test_spawns_once_with_captured_target(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            spawn_mock = mock.MagicMock(return_value=4242)
            first = cp.ensure_watcher(
                cwd="/work/demo",
                session_dir=sdir,
                spawn_fn=spawn_mock,
                resolve_target_fn=_handle_target,
            )
            second = cp.ensure_watcher(
                cwd="/work/demo",
                session_dir=sdir,
                spawn_fn=spawn_mock,
                resolve_target_fn=_handle_target,
            )

        self.assertEqual(first, 4242)
        self.assertIsNone(second)
        spawn_mock.assert_called_once()
        cmd = spawn_mock.call_args.args[0]
        self.assertTrue(cmd[1].endswith("approval_relay_watcher.py"))
        self.assertEqual(cmd[cmd.index("--pane") + 1], "%3")
        self.assertEqual(cmd[cmd.index("--tmux-socket") + 1], "/tmp/sock")
        self.assertEqual(cmd[cmd.index("--lease-holder") + 1], str(os.getpid()))
        self.assertEqual(cmd[cmd.index("--cwd") + 1], "/work/demo")

    def test_search_target_passes_no_pane(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            spawn_mock = mock.MagicMock(return_value=4242)
            cp.ensure_watcher(
                cwd="/work/demo",
                session_dir=Path(tmp),
                spawn_fn=spawn_mock,
                resolve_target_fn=lambda: {"method": "search", "pane": None},
            )
        self.assertNotIn("--pane", spawn_mock.call_args.args[0])

    def test_spawn_failure_releases_lease(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            pid = cp.ensure_watcher(
                cwd="/work/demo",
                session_dir=sdir,
                spawn_fn=mock.MagicMock(return_value=None),
                resolve_target_fn=_handle_target,
            )
            self.assertIsNone(pid)
            self.assertIsNone(lease.read_lease(session_dir=sdir))


class TestApprovalRelayHooks(unittest.TestCase):
    def setUp(self) -> None:
        self._home = tempfile.TemporaryDirectory()
        self.addCleanup(self._home.cleanup)
        patcher = mock.patch.dict(os.environ, {"APPROVAL_RELAY_HOME": self._home.name})
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_permission_hook_allows_forwarded_question(self) -> None:
        with (
            mock.patch.object(cp.telegram, "load_credentials", return_value=CREDS),
            mock.patch.object(cp, "raise_prompt", return_value="forward") as raise_mock,
        ):
            decision = cp.handle_permission_hook(
                payload={"tool_name": "AskUserQuestion", "tool_input": {"questions": []}},
                cwd="/work/demo",
            )
        self.assertEqual(decision, {"decision": {"behavior": "allow"}})
        self.assertEqual(raise_mock.call_args.kwargs["session_dir"], session.session_dir("/work/demo"))

    def test_permission_hook_asks_for_other_tools(self) -> None:
        with (
            mock.patch.object(cp.telegram, "load_credentials", return_value=CREDS),
            mock.patch.object(cp, "raise_prompt", return_value="forward"),
        ):
            decision = cp.handle_permission_hook(
                payload={"tool_name": "Bash", "tool_input": {"command": "ls"}},
                cwd="/work/demo",
            )
        self.assertEqual(decision, {"decision": {"behavior": "ask"}})

    def test_permission_hook_without_credentials_asks_and_writes_nothing(self) -> None:
        with (
            mock.patch.object(cp.telegram, "load_credentials", return_value=None),
            mock.patch.object(cp, "raise_prompt") as raise_mock,
        ):
            decision = cp.handle_permission_hook(payload={"tool_name": "Bash"}, cwd="/work/demo")
        self.assertEqual(decision, {"decision": {"behavior": "ask"}})
        raise_mock.assert_not_called()

    def test_prompt_submit_hook_drains_inbox_into_context(self) -> None:
        sdir = session.ensure_session_dir("/work/demo")
        assert sdir is not None
        trigger.enqueue_inbox(session_dir=sdir, entry={"id": "7:1", "from": "Ana", "text": "ship it", "ts": 1.0})
        with (
            mock.patch.object(cp, "ensure_watcher", return_value=None) as ensure_mock,
            mock.patch.object(cp.reply.time, "strftime", return_value="09:00:00"),
        ):
            output = cp.handle_prompt_submit_hook(cwd="/work/demo")

        ensure_mock.assert_called_once()
        self.assertEqual(
            output,
            {
                "hookSpecificOutput": {
                    "hookEventName": "UserPromptSubmit",
                    "additionalContext": (
                        "[Telegram Messages Received]\n[09:00:00] Ana: ship it\n[End Telegram Messages]"
                    ),
                }
            },
        )
        self.assertEqual(trigger.inbox_size(session_dir=sdir), 0)

    def test_prompt_submit_hook_with_empty_inbox_has_no_output(self) -> None:
        with mock.patch.object(cp, "ensure_watcher", return_value=None):
            self.assertIsNone(cp.handle_prompt_submit_hook(cwd="/work/demo"))

    def test_session_start_hook_ensures_watcher(self) -> None:
        with mock.patch.object(cp, "ensure_watcher", return_value=4242) as ensure_mock:
            self.assertEqual(cp.handle_session_start_hook(cwd="/work/demo"), {})
        self.assertEqual(ensure_mock.call_args.kwargs["cwd"], "/work/demo")

    def test_main_permission_hook_defaults_to_ask_on_bad_input(self) -> None:
        with (
            mock.patch("sys.stdin", io.StringIO("not json")),
            mock.patch("sys.stdout", new_callable=io.StringIO) as out,
            mock.patch.object(cp.telegram, "load_credentials", return_value=None),
        ):
            code = cp.main(["permission-hook", "--cwd", "/work/demo"])
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out.getvalue()), {"decision": {"behavior": "ask"}})

    def test_main_permission_hook_survives_internal_errors(self) -> None:
        with (
            mock.patch("sys.stdin", io.StringIO(json.dumps({"tool_name": "Bash"}))),
            mock.patch("sys.stdout", new_callable=io.StringIO) as out,
            mock.patch.object(cp, "handle_permission_hook", side_effect=RuntimeError("boom")),
            mock.patch.object(cp, "_warn_stderr"),
        ):
            code = cp.main(["permission-hook"])
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out.getvalue()), {"decision": {"behavior": "ask"}})

    def test_main_session_start_hook_prints_empty_object(self) -> None:
        with (
            mock.patch("sys.stdin", io.StringIO("")),
            mock.patch("sys.stdout", new_callable=io.StringIO) as out,
            mock.patch.object(cp, "ensure_watcher", return_value=None),
        ):
            code = cp.main(["session-start-hook", "--cwd", "/work/demo"])
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out.getvalue()), {})

    def test_main_dispatches_watch_to_watcher(self) -> None:
        with mock.patch.object(cp.watcher, "main", return_value=0) as watcher_main:
            code = cp.main(["watch", "--session-dir", "/tmp/x", "--lease-holder", "1"])
        self.assertEqual(code, 0)
        watcher_main.assert_called_once_with(["--session-dir", "/tmp/x", "--lease-holder", "1"])


class TestApprovalRelayPoller(unittest.TestCase):
    def test_poll_once_routes_updates_and_saves_cursor(self) -> None:
        updates = [
            {
                "update_id": 21,
                "message": {
                    "message_id": 5,
                    "date": 1000,
                    "chat": {"id": 7},
                    "from": {"id": 7, "first_name": "Ana"},
                    "text": "hello",
                },
            },
            {"update_id": 22, "edited_message": {}},
        ]
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            with (
                mock.patch.object(cp.telegram, "fetch_updates", return_value=updates) as fetch_mock,
                mock.patch.object(cp.telegram, "send_message", return_value=True),
            ):
                cursor = cp.poll_once(session_dir=sdir, credentials=CREDS, after_update_id=20, long_poll_s=0)

            self.assertEqual(cursor, 22)
            self.assertEqual(cp.load_cursor(session_dir=sdir), 22)
            self.assertEqual(fetch_mock.call_args.kwargs["after_update_id"], 20)
            drained = trigger.drain_inbox(session_dir=sdir)
            self.assertEqual([item["text"] for item in drained], ["hello"])

    def test_poll_once_without_updates_keeps_cursor(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            with mock.patch.object(cp.telegram, "fetch_updates", return_value=[]):
                cursor = cp.poll_once(session_dir=sdir, credentials=CREDS, after_update_id=5, long_poll_s=0)
            self.assertEqual(cursor, 5)
            self.assertFalse((sdir / session.CURSOR_FILE).exists())

    def test_check_messages_text(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            sdir = Path(tmp)
            self.assertEqual(cp.check_messages_text(session_dir=sdir), "No pending messages from Telegram")
            trigger.enqueue_inbox(session_dir=sdir, entry={"from": "Ana", "text": "hi", "ts": 1.0})
            with mock.patch.object(cp.reply.time, "strftime", return_value="09:00:00"):
                text = cp.check_messages_text(session_dir=sdir)
            self.assertEqual(text, "1 message(s) from Telegram:\n\n[09:00:00] Ana: hi")

    def test_send_shim_uses_markdown(self) -> None:
        with (
            mock.patch.object(cp.telegram, "load_credentials", return_value=CREDS),
            mock.patch.object(cp.telegram, "send_message", return_value=True) as send_mock,
            mock.patch("sys.stdout", new_callable=io.StringIO) as out,
        ):
            code = cp._run_send(cwd="/work/demo", message="  *done*  ")
        self.assertEqual(code, 0)
        send_mock.assert_called_once_with(token="t", chat_id="7", message="*done*", parse_mode="Markdown")
        self.assertEqual(out.getvalue(), "Message sent successfully to Telegram\n")


class TestApprovalRelayDoctor(unittest.TestCase):
    def test_doctor_report_reflects_session_state(self) -> None:
        with tempfile.TemporaryDirectory() as home:
            with mock.patch.dict(os.environ, {"APPROVAL_RELAY_HOME": home}):
                sdir = session.ensure_session_dir("/work/demo")
                assert sdir is not None
                pending_store.put_pending(session_dir=sdir, kind="plan_entry", payload={}, now_ts=1000.0)
                lease.acquire_lease(session_dir=sdir, pid=111, now_ts=1000.0, resolve_target_fn=_handle_target)
                trigger.enqueue_inbox(session_dir=sdir, entry={"id": "x"})
                with mock.patch.object(cp.telegram, "load_credentials", return_value=CREDS):
                    report = cp.doctor_report(cwd="/work/demo", now_ts=1010.0)

        self.assertTrue(report["ok"])
        self.assertEqual(report["session_id"], session.session_id("/work/demo"))
        self.assertEqual(report["credentials"], {"configured": True, "source": "env"})
        self.assertEqual(report["pending"], {"kind": "plan_entry", "age_s": 10.0})
        self.assertEqual(report["lease"]["holder_pid"], 111)
        self.assertTrue(report["lease"]["fresh"])
        self.assertEqual(report["inbox_size"], 1)
        self.assertNotIn("bot_token", json.dumps(report))

    def test_run_doctor_json(self) -> None:
        with tempfile.TemporaryDirectory() as home:
            with (
                mock.patch.dict(os.environ, {"APPROVAL_RELAY_HOME": home}),
                mock.patch.object(cp.telegram, "load_credentials", return_value=None),
                mock.patch("sys.stdout", new_callable=io.StringIO) as out,
            ):
                code = cp.main(["doctor", "--json", "--cwd", "/work/demo"])
        self.assertEqual(code, 0)
        report = json.loads(out.getvalue())
        self.assertFalse(report["ok"])
        self.assertIsNone(report["lease"])


if __name__ == "__main__":
    unittest.main()
