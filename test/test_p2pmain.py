import warnings

import pytest

import p2pmain
from conftest import DNS_HOST, DNS_PORT
from peer import Identifier
from libchord import chord as chordlib
from p2pclient import P2PClient


@pytest.fixture
def main(transport, dns, tmp_path, monkeypatch):
    monkeypatch.setattr(p2pmain.peer, "local_identifier",
                        lambda port, hostname=None, seed=None: Identifier(hostname, hostname, port, 10))
    monkeypatch.setattr(p2pmain, "TcpTransport", lambda timeout, retries: transport)
    monkeypatch.setattr(p2pmain.P2PServer, "run",
                        lambda server: transport.register("peer10", server.port, server._process_p2p_request))

    args = p2pmain.get_args([DNS_HOST, "--dns-port", str(DNS_PORT), "--host", "peer10",
                             "--data-dir", str(tmp_path / "peer10"), "--stabilisation-interval", "0"])
    return p2pmain.P2PMain(args)


def test_leave_option_exits_cleanly(main, dns):
    options = iter(["4", "7"])
    main.p2p_client.input = lambda prompt: next(options)

    assert main.run() == 0
    assert main.chord.state == chordlib.LEFT
    assert dns.get_peers() == []


def test_console_failure_still_leaves_ring(main, dns):
    def closed_stdin(prompt):
        raise EOFError()
    main.p2p_client.input = closed_stdin

    with pytest.raises(EOFError):
        main.run()

    assert main.chord.state == chordlib.LEFT
    assert dns.get_peers() == []


def test_duplicate_identifier_exits_with_error(main, dns):
    dns._process_joined(Identifier("other", "other", 7495, 10))

    assert main.run() == 1
    assert [row[1] for row in dns.get_peers()] == ["other"]


def test_console_tables_render_without_deprecations(main, capsys):
    main.chord.store_file("0005", "notes.txt", b"abc")

    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        main.chord.print_finger_table()
        main.chord.print_files()
        P2PClient(main.chord)._render_user_menu()

    out = capsys.readouterr().out
    assert "Finger Table for peer10" in out
    assert "notes.txt" in out
    assert "Leave Chord Ring" in out
