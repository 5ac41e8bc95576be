import random


def test_socket_connect_and_join(sio_client):
    # Ensure we are connected to /ws
    if not sio_client.is_connected('/ws'):
        sio_client.connect(namespace='/ws')
    assert sio_client.is_connected('/ws')

    # Flush any initial events
    sio_client.get_received('/ws')

    sio_client.emit('join_challenge', {'date': '2026-03-14'}, namespace='/ws')
    received = sio_client.get_received('/ws')
    joined = [pkt for pkt in received if pkt['name'] == 'joined']
    assert joined and joined[0]['args'][0]['room'] == 'challenge:2026-03-14'


def test_join_with_bad_date_reports_error(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('join_challenge', {'date': 'tomorrow'}, namespace='/ws')
    assert any(pkt['name'] == 'error' for pkt in sio_client.get_received('/ws'))


def test_ping_pong(sio_client):
    sio_client.get_received('/ws')
    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    pongs = [pkt for pkt in sio_client.get_received('/ws') if pkt['name'] == 'pong']
    assert pongs and pongs[0]['args'][0] == {'n': 1}


def test_player_finished_is_broadcast_to_challenge_room(sio_client, auth_client, make_catalog):
    from thebox.services.daily.generator import create_daily_challenge

    make_catalog(12)
    result = create_daily_challenge(rng=random.Random(2))
    sio_client.emit('join_challenge', {}, namespace='/ws')
    sio_client.get_received('/ws')

    session_id = auth_client.post('/api/daily/start').get_json()['session_id']
    auth_client.post(f'/api/daily/sessions/{session_id}/end')

    events = [pkt for pkt in sio_client.get_received('/ws') if pkt['name'] == 'player_finished']
    assert len(events) == 1
    payload = events[0]['args'][0]
    assert payload['date'] == result.challenge_date.isoformat()
    assert payload['total_score'] == 0


def test_leaving_room_stops_notifications(sio_client, auth_client, make_catalog):
    from thebox.services.daily.generator import create_daily_challenge

    make_catalog(12)
    create_daily_challenge(rng=random.Random(2))
    sio_client.emit('join_challenge', {}, namespace='/ws')
    sio_client.emit('leave_challenge', {}, namespace='/ws')
    sio_client.get_received('/ws')

    session_id = auth_client.post('/api/daily/start').get_json()['session_id']
    auth_client.post(f'/api/daily/sessions/{session_id}/end')
    assert not any(pkt['name'] == 'player_finished' for pkt in sio_client.get_received('/ws'))
