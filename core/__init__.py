# Order dispatch and live tracking core: state machine, matching, tracking, notifications.
