import asyncio
import json
import zipfile

import pytest
from aiohttp import web

from conftest import fresh_credentials, local_config, token_body

from mangadex_async import (
    ApiError,
    AuthError,
    Config,
    MangaDexClient,
    MissingTokens,
    ValidationFailed,
)
from mangadex_async.downloader import ChapterDownloader
from mangadex_async.main import build_parser, config_from_args

MANGA_ID = "m1"
CHAPTER_ID = "c1"


def manga_obj(manga_id=MANGA_ID, title="Frieren"):
    return {"id": manga_id, "type": "manga", "attributes": {"title": {"en": title}}}


def chapter_obj(chapter_id=CHAPTER_ID):
    return {
        "id": chapter_id,
        "type": "chapter",
        "attributes": {"volume": "1", "chapter": "2", "title": "Journey",
                       "translatedLanguage": "en", "pages": 2, "externalUrl": None},
        "relationships": [
            {"id": MANGA_ID, "type": "manga"},
            {"id": "g1", "type": "scanlation_group", "attributes": {"name": "Team"}},
        ],
    }


@pytest.mark.asyncio
async def test_login_stores_credentials(serve):
    received = {}

    async def login(request):
        received.update(await request.json())
        return web.json_response(token_body(session="s", refresh="r"))

    base = await serve([web.post("/auth/login", login)])
    async with MangaDexClient(local_config(base)) as client:
        creds = await client.login("test", "hunter12")
        assert client.credentials is creds

    assert received == {"username": "test", "password": "hunter12"}
    assert creds.access_token == "s"
    assert creds.refresh_token == "r"


@pytest.mark.asyncio
async def test_login_rejected(serve):
    async def login(request):
        return web.json_response({"result": "error", "errors": []}, status=400)

    base = await serve([web.post("/auth/login", login)])
    async with MangaDexClient(local_config(base)) as client:
        with pytest.raises(AuthError):
            await client.login("test", "hunter12")
        assert client.credentials is None


@pytest.mark.asyncio
async def test_login_input_checked_locally():
    async with MangaDexClient(local_config("http://127.0.0.1:1")) as client:
        with pytest.raises(ValidationFailed):
            await client.login("", "hunter12")
        with pytest.raises(ValidationFailed):
            await client.login("test", "short")


@pytest.mark.asyncio
async def test_check_token_and_logout(serve):
    seen = []

    async def check(request):
        seen.append(request.headers.get("Authorization"))
        return web.json_response({"result": "ok", "isAuthenticated": True,
                                  "roles": ["ROLE_MEMBER"], "permissions": ["manga.view"]})

    async def logout(request):
        seen.append(request.headers.get("Authorization"))
        return web.json_response({"result": "ok"})

    base = await serve([web.get("/auth/check", check), web.post("/auth/logout", logout)])
    async with MangaDexClient(local_config(base)) as client:
        client.store.set(fresh_credentials(access="sessiontoken"))
        result = await client.check_token()
        await client.logout()
        assert client.credentials is None
        with pytest.raises(MissingTokens):
            await client.check_token()

    assert result.is_authenticated
    assert result.roles == ["ROLE_MEMBER"]
    assert seen == ["Bearer sessiontoken", "Bearer sessiontoken"]


@pytest.mark.asyncio
async def test_ping(serve):
    async def pong(request):
        return web.Response(text="pong")

    async def wrong(request):
        return web.Response(text="nope")

    good = await serve([web.get("/ping", pong)])
    bad = await serve([web.get("/ping", wrong)])

    async with MangaDexClient(local_config(good)) as client:
        await client.ping()
    async with MangaDexClient(local_config(bad)) as client:
        with pytest.raises(ApiError):
            await client.ping()


@pytest.mark.asyncio
async def test_list_manga_query_encoding(serve):
    queries = []

    async def manga(request):
        queries.append(request.query)
        return web.json_response({"result": "ok", "data": [manga_obj()],
                                  "limit": 5, "offset": 0, "total": 1})

    base = await serve([web.get("/manga", manga)])
    async with MangaDexClient(local_config(base)) as client:
        page = await client.list_manga("frieren", limit=5, includes=["author", "artist"],
                                       order={"followedCount": "desc"})
        with pytest.raises(ValidationFailed):
            await client.list_manga("frieren", limit=500)

    assert len(queries) == 1
    q = queries[0]
    assert q["title"] == "frieren"
    assert q["limit"] == "5"
    assert q.getall("includes[]") == ["author", "artist"]
    assert q["order[followedCount]"] == "desc"
    assert "offset" not in q
    assert page.results[0].display_title == "Frieren"


@pytest.mark.asyncio
async def test_listing_endpoints(serve):
    queries = {}

    def collection(items):
        return {"result": "ok", "data": items, "limit": 10, "offset": 0, "total": len(items)}

    async def tags(request):
        return web.json_response(collection([
            {"id": "t1", "type": "tag", "attributes": {"name": {"en": "Action"}, "group": "genre"}},
        ]))

    async def feed(request):
        queries["feed"] = request.query
        return web.json_response(collection([chapter_obj()]))

    async def chapters(request):
        queries["chapters"] = request.query
        return web.json_response(collection([chapter_obj("c1"), chapter_obj("c2")]))

    async def manga(request):
        return web.json_response({"result": "ok", "data": manga_obj(request.match_info["id"])})

    base = await serve([
        web.get("/manga/tag", tags),
        web.get("/manga/{id}/feed", feed),
        web.get("/chapter", chapters),
        web.get("/manga/{id}", manga),
    ])
    async with MangaDexClient(local_config(base)) as client:
        tag_list = await client.list_tags()
        chapter_page = await client.manga_feed(MANGA_ID, translated_language=["en"],
                                               order={"chapter": "asc"})
        listed = await client.list_chapters(manga=MANGA_ID, limit=10)
        single = await client.get_manga("m9")

    assert tag_list[0].name["en"] == "Action"
    assert chapter_page.results[0].chapter == "2"
    assert queries["feed"].getall("translatedLanguage[]") == ["en"]
    assert queries["feed"]["order[chapter]"] == "asc"
    assert [c.id for c in listed.results] == ["c1", "c2"]
    assert queries["chapters"]["manga"] == MANGA_ID
    assert single.id == "m9"


@pytest.mark.asyncio
async def test_download_image_retries_server_errors(serve, tmp_path):
    attempts = []

    async def image(request):
        attempts.append(1)
        if len(attempts) < 3:
            return web.Response(status=503)
        return web.Response(body=b"\xff\xd8jpeg", content_type="image/jpeg")

    base = await serve([web.get("/img.jpg", image)])
    async with MangaDexClient(local_config(base)) as client:
        written = await client.download_image(base + "img.jpg", tmp_path / "p" / "001.jpg", retries=4)

    assert written == 6
    assert len(attempts) == 3
    assert (tmp_path / "p" / "001.jpg").read_bytes() == b"\xff\xd8jpeg"


@pytest.mark.asyncio
async def test_download_chapter_to_cbz(serve, tmp_path):
    state = {}

    async def chapter(request):
        return web.json_response({"result": "ok", "data": chapter_obj()})

    async def manga(request):
        return web.json_response({"result": "ok", "data": manga_obj()})

    async def at_home(request):
        state["force"] = request.query.get("forcePort443")
        return web.json_response({
            "result": "ok",
            "baseUrl": state["base"].rstrip("/"),
            "chapter": {"hash": "h1", "data": ["1.png", "2.png"], "dataSaver": ["1.jpg"]},
        })

    async def page(request):
        return web.Response(body=request.match_info["name"].encode(), content_type="image/png")

    base = await serve([
        web.get(f"/chapter/{CHAPTER_ID}", chapter),
        web.get(f"/manga/{MANGA_ID}", manga),
        web.get(f"/at-home/server/{CHAPTER_ID}", at_home),
        web.get("/data/h1/{name}", page),
    ])
    state["base"] = base

    cfg = local_config(base, output_dir=tmp_path / "out")
    downloader = ChapterDownloader(cfg)
    async with MangaDexClient(cfg) as client:
        produced = await downloader.download_chapters(client, [CHAPTER_ID])

    assert state["force"] == "false"
    assert len(produced) == 1
    cbz = produced[0]
    assert cbz.parent.name == "Frieren"
    assert cbz.name == "Vol. 1 Ch. 2 - Journey.cbz"
    with zipfile.ZipFile(cbz) as zf:
        names = zf.namelist()
        info = json.loads(zf.read("info.txt"))
        assert zf.read("001.png") == b"1.png"
        assert b"<Series>Frieren</Series>" in zf.read("ComicInfo.xml")
    assert names[:2] == ["info.txt", "ComicInfo.xml"]
    assert info["groups"] == ["Team"]
    assert info["pages"] == 2
    # temp dirs cleaned up
    assert [p.name for p in (tmp_path / "out").iterdir()] == ["Frieren"]


@pytest.mark.asyncio
async def test_failed_chapter_is_skipped(serve, tmp_path):
    async def missing(request):
        return web.json_response({"result": "error", "errors": []}, status=404)

    base = await serve([web.get("/chapter/{id}", missing)])
    cfg = local_config(base, output_dir=tmp_path)
    async with MangaDexClient(cfg) as client:
        produced = await ChapterDownloader(cfg).download_chapters(client, ["nope"])

    assert produced == []
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_failed_page_stops_the_rest_of_the_chapter(serve, tmp_path):
    state = {}

    async def chapter(request):
        return web.json_response({"result": "ok", "data": chapter_obj()})

    async def manga(request):
        return web.json_response({"result": "ok", "data": manga_obj()})

    async def at_home(request):
        return web.json_response({
            "result": "ok",
            "baseUrl": state["base"].rstrip("/"),
            "chapter": {"hash": "h1", "data": ["1.png", "2.png"], "dataSaver": []},
        })

    async def page(request):
        if request.match_info["name"] == "1.png":
            return web.Response(status=404)
        await asyncio.sleep(0.3)
        return web.Response(body=b"late", content_type="image/png")

    base = await serve([
        web.get(f"/chapter/{CHAPTER_ID}", chapter),
        web.get(f"/manga/{MANGA_ID}", manga),
        web.get(f"/at-home/server/{CHAPTER_ID}", at_home),
        web.get("/data/h1/{name}", page),
    ])
    state["base"] = base

    out = tmp_path / "out"
    cfg = local_config(base, output_dir=out)
    async with MangaDexClient(cfg) as client:
        produced = await ChapterDownloader(cfg).download_chapters(client, [CHAPTER_ID])
        # give a leftover page download time to land, if one survived
        await asyncio.sleep(0.4)

    assert produced == []
    assert list(out.iterdir()) == []


def test_config_from_env(tmp_path):
    cfg = Config.from_env({
        "MANGADEX_API_BASE": "http://localhost:8080",
        "MANGADEX_RATE_LIMIT": "2",
        "MANGADEX_RATE_WINDOW": "10",
        "MANGADEX_NON_BLOCKING": "true",
        "MANGADEX_OUTPUT_DIR": str(tmp_path),
        "MANGADEX_LANGUAGE": "es-la",
    })
    assert cfg.api_base == "http://localhost:8080"
    assert cfg.rate_limit_calls == 2
    assert cfg.rate_limit_window == 10.0
    assert cfg.blocking is False
    assert cfg.output_dir == tmp_path
    assert cfg.language == "es-la"
    assert Config.from_env({}) == Config()


def test_feed_language_defaults_to_config():
    args = build_parser().parse_args(["feed", MANGA_ID])
    assert config_from_args(args, {}).language == "en"
    assert config_from_args(args, {"MANGADEX_LANGUAGE": "ja"}).language == "ja"

    args = build_parser().parse_args(["feed", MANGA_ID, "--lang", "fr"])
    assert config_from_args(args, {"MANGADEX_LANGUAGE": "ja"}).language == "fr"
