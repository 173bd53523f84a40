"""HTTP surface: task control, event streams, chats, runbooks and triage."""
