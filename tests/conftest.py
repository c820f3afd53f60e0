"""Test configuration and fixtures for bookflow tests."""

import os
import sys
from io import BytesIO

import pytest
from PIL import Image

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bookflow import MemoryBook


SAMPLE_CHAPTER = '''<?xml version="1.0" encoding="UTF-8"?>
<html xmlns="http://www.w3.org/1999/xhtml">
<head>
    <title>Chapter 1</title>
</head>
<body>
    <h1 id="c1">Chapter 1</h1>
    <p>This is a <strong>bold</strong> paragraph with some <em>italic</em> text.</p>
</body>
</html>'''


PROSE = [
    "Alice was beginning to get very tired of sitting by her sister on the bank, "
    "and of having nothing to do.",
    "Once or twice she had peeped into the book her sister was reading, but it had "
    "no pictures or conversations in it.",
    "So she was considering in her own mind whether the pleasure of making a "
    "daisy-chain would be worth the trouble of getting up and picking the daisies.",
    "There was nothing so very remarkable in that; nor did Alice think it so very "
    "much out of the way to hear the Rabbit say to itself that it would be late.",
    "In another moment down went Alice after it, never once considering how in the "
    "world she was to get out again.",
    "The rabbit-hole went straight on like a tunnel for some way, and then dipped "
    "suddenly down, so suddenly that Alice had not a moment to think about stopping.",
]


def xhtml(body, title="Chapter"):
    """Wrap body markup in a minimal XHTML document."""
    return '''<?xml version="1.0" encoding="UTF-8"?>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:epub="http://www.idpf.org/2007/ops">
<head>
    <title>{}</title>
</head>
<body>
{}
</body>
</html>'''.format(title, body)


def png_bytes(size=(4, 3)):
    buf = BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buf, "PNG")
    return buf.getvalue()


CHAPTER_ONE = xhtml('''
    <h1 id="start">Down the Rabbit-Hole</h1>
    <p>{0}</p>
    <p>{1} See <a href="ch2.xhtml#pool">the pool of tears</a> for more.</p>
    <p>{2}<a epub:type="noteref" href="#fn1">1</a></p>
    <img src="../Images/pic.png" alt="The White Rabbit"/>
    <p>{3}</p>
    <p>{4}</p>
    <p>{5}</p>
    <aside epub:type="footnote" id="fn1"><p><a href="#start">1</a> A note about daisies.</p></aside>
'''.format(*PROSE), "Down the Rabbit-Hole")


CHAPTER_TWO = xhtml('''
    <h1 id="start">The Pool of Tears</h1>
    <p>{5}</p>
    <p>{4}</p>
    <p>{3}</p>
    <h2 id="pool">Curiouser and curiouser</h2>
    <p>{2}</p>
    <p>{1}</p>
    <p>{0}</p>
'''.format(*PROSE), "The Pool of Tears")


@pytest.fixture
def sample_markup():
    return SAMPLE_CHAPTER


@pytest.fixture
def book():
    """Two chapters under Text/ and one image under Images/."""
    return MemoryBook(
        [("Text/ch1.xhtml", CHAPTER_ONE), ("Text/ch2.xhtml", CHAPTER_TWO)],
        resources={"Images/pic.png": png_bytes()},
        metadata={"title": "Alice"},
    )


@pytest.fixture
def book_dir(tmp_path):
    """The two chapters written out as files in a directory."""
    (tmp_path / "ch1.xhtml").write_text(CHAPTER_ONE, encoding="utf-8")
    (tmp_path / "ch2.xhtml").write_text(CHAPTER_TWO, encoding="utf-8")
    return tmp_path
