from vlmseq.assembler import ImageSlot
from vlmseq.text import TokenTextStream, join_turns, split_prompt


def encode(text):
    return list(text.encode("utf-8"))


def decode(ids):
    return bytes(ids).decode("utf-8", errors="replace")


def test_split_prompt_places_image_slots():
    markers = split_prompt("a<image>bc<image>", encode, bos_token_id=1)
    assert markers == [1, 97, ImageSlot("image0"), 98, 99, ImageSlot("image1")]


def test_split_prompt_without_images():
    assert split_prompt("hi", encode) == [104, 105]


def test_join_turns_marks_last_turn():
    prompt = join_turns([[1, 2], [ImageSlot(), 3], [4, 5]])
    assert prompt.markers == [1, 2, ImageSlot(), 3, 4, 5]
    assert prompt.last_turn_start == 4


def test_stream_holds_back_incomplete_characters():
    stream = TokenTextStream(decode)
    euro = list("€".encode("utf-8"))
    pieces = [stream.next_token(t) for t in [72] + euro]
    assert pieces == ["H", None, None, "€"]
    assert stream.decode_all() == "H€"


def test_stream_flushes_rest():
    stream = TokenTextStream(decode)
    stream.next_token(0xE2)
    assert stream.decode_rest() == "\ufffd"
    stream.clear()
    assert stream.tokens == []
    assert stream.decode_rest() is None
