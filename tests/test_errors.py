from errors import ChatError, NotFound, ValidationError


def test_default_and_explicit_messages():
    assert NotFound().message == "Not found"
    assert NotFound(None).message == "Not found"
    assert ValidationError("Missing receiver_id").message == "Missing receiver_id"
    assert str(ChatError()) == "Internal server error"
    assert NotFound.status_code == 404
