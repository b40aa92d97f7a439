from pmc.filters import FIELD_AWARE_DEINTERLACER, FilterChain, filter_name, split_chain


def test_split_chain_respects_quotes_and_parens():
    text = "scale='if(gt(a,1),-2,720)':'if(gt(a,1),720,-2)',setsar=1/1"
    assert split_chain(text) == ["scale='if(gt(a,1),-2,720)':'if(gt(a,1),720,-2)'", "setsar=1/1"]


def test_split_chain_respects_escaped_commas():
    assert split_chain(r"drawtext=text=a\,b,format=yuv420p") == [r"drawtext=text=a\,b", "format=yuv420p"]


def test_split_chain_empty():
    assert split_chain("") == []


def test_filter_name():
    assert filter_name("YADIF=mode=1") == "yadif"
    assert filter_name("hflip") == "hflip"


def test_with_deinterlacer_replaces_in_place():
    chain = FilterChain.parse("crop=100:100,yadif,scale=640:-2")
    out = chain.with_deinterlacer()
    assert out.filters == ("crop=100:100", FIELD_AWARE_DEINTERLACER, "scale=640:-2")


def test_with_deinterlacer_collapses_several():
    out = FilterChain.parse("yadif,bwdif,scale=640:-2").with_deinterlacer()
    assert out.render() == f"{FIELD_AWARE_DEINTERLACER},scale=640:-2"


def test_with_deinterlacer_prepends_when_absent():
    out = FilterChain.parse("scale=640:-2").with_deinterlacer()
    assert out.filters[0] == FIELD_AWARE_DEINTERLACER
    assert out.has_deinterlacer()


def test_strip_deinterlace():
    out = FilterChain.parse("yadif=1,scale=640:-2").strip_deinterlace()
    assert out.render() == "scale=640:-2"
    assert not FilterChain.parse("yadif").strip_deinterlace()
