#!/usr/bin/env python3
"""
Rally → Trello Iteration Import
===============================
Copies the user stories and defects of one Rally iteration into a Trello
list, one card per work item.

What gets imported:
  Rally defects          → Trello cards (imported first)
  Rally user stories     → Trello cards
  Target board / list    → created if they don't exist yet

Card mapping:
  Card name              → "<FormattedID>: <Name>"   (also the dedup key)
  Card attachment        → deep link back to the Rally item

Cards whose name already exists in the target list are skipped, so the
import can be re-run safely after the iteration changes.

Usage:
    python rally_trello_sync.py -i "Sprint 42"
    python rally_trello_sync.py -i "Sprint 42" -b "Team Board" -l "Backlog"
"""

import argparse
import json
import sys
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import requests
import yaml

CONFIG_FILE    = "config.yml"
RALLY_URL      = "https://rally1.rallydev.com/slm"
TRELLO_API_URL = "https://api.trello.com/1"
DEFAULT_LIST   = "To Do"

RALLY_WSAPI_VERSION = "v2.0"
RALLY_FETCH         = "Name,FormattedID,Project,ObjectID"
RALLY_PAGE_SIZE     = 1000

# Sent with every Rally request so the integration shows up in Rally's logs
RALLY_INTEGRATION_HEADERS: dict = {
    "X-RallyIntegrationVendor":  "Trello",
    "X-RallyIntegrationName":    "Trello Import",
    "X-RallyIntegrationVersion": "1.0",
}

# Short entity type → how Rally names it, how the deep link spells it,
# and how the card attachment is labelled
ENTITY_TYPES: dict = {
    "story": {
        "wsapi": "hierarchicalrequirement",
        "path":  "userstory",
        "label": "Rally User Story",
        "noun":  "user stories",
    },
    "defect": {
        "wsapi": "defect",
        "path":  "defect",
        "label": "Rally Defect",
        "noun":  "defects",
    },
}
DEFAULT_ENTITY_TYPES = ("defect", "story")

# What to do when an entity type has no items in the iteration
EMPTY_POLICIES = ("warn", "abort")
ORDERS         = ("desc", "asc")


class SyncError(Exception):
    """A Rally or Trello request failed."""


class EmptyIterationError(Exception):
    """No items of some entity type matched the iteration (on_empty: abort)."""


class ConfigError(Exception):
    def __init__(self, errors: list) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RallySettings:
    api_key:   str
    workspace: str
    project:   str
    iteration: str
    url:       str = RALLY_URL
    order:     str = "desc"
    on_empty:  str = "warn"
    types:     tuple = DEFAULT_ENTITY_TYPES


@dataclass(frozen=True)
class TrelloSettings:
    developer_key: str
    user_token:    str
    board:         str
    list:          str = DEFAULT_LIST


@dataclass(frozen=True)
class Config:
    rally:  RallySettings
    trello: TrelloSettings


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rally-trello",
        description="Import the stories and defects of a Rally iteration into a Trello list.",
    )
    parser.add_argument("-c", "--config", default=CONFIG_FILE,
                        help=f"YAML config file (default: {CONFIG_FILE})")
    parser.add_argument("-w", "--rally-workspace", dest="rally_workspace",
                        help="Rally workspace name")
    parser.add_argument("-p", "--rally-project", dest="rally_project",
                        help="Rally project name")
    parser.add_argument("-i", "--rally-iteration", dest="rally_iteration",
                        help="Rally iteration name (required)")
    parser.add_argument("-b", "--trello-board", dest="trello_board",
                        help="Target trello board (will be created if necessary)")
    parser.add_argument("-l", "--trello-list", dest="trello_list",
                        help=f'Trello list name (will be created if necessary, default is "{DEFAULT_LIST}")')
    parser.add_argument("--on-empty", dest="rally_on_empty", choices=EMPTY_POLICIES,
                        help="What to do when the iteration has no stories or no defects "
                             "(default: warn)")
    return parser


def load_config_file(path: str) -> dict:
    try:
        with open(path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except FileNotFoundError:
        raise ConfigError([f"Config file ({path}) doesn't exist. "
                           f"Please create it, using {path}.example as a guide."])
    except yaml.YAMLError as exc:
        raise ConfigError([f"Config file ({path}) is not valid YAML: {exc}"])
    if not isinstance(raw, dict):
        raise ConfigError([f"Config file ({path}) must contain 'rally' and 'trello' sections."])
    return raw


def merge_options(raw: dict, options: dict) -> dict:
    """
    Overlay command-line values onto the config file contents.
    Option names are "<app>_<key>" (e.g. rally_iteration → rally.iteration);
    options left unset (None) keep the file's value.
    """
    merged = {app: dict(raw.get(app) or {}) for app in ("rally", "trello")}
    for name, value in options.items():
        if value is None or "_" not in name:
            continue
        app, key = name.split("_", 1)
        if app in merged:
            merged[app][key] = value
    if not merged["trello"].get("list"):
        merged["trello"]["list"] = DEFAULT_LIST
    return merged


def validate_config(merged: dict, config_file: str = CONFIG_FILE) -> list:
    """Return every problem with the merged config (empty list when usable)."""
    rally  = merged.get("rally") or {}
    trello = merged.get("trello") or {}
    errors = []
    if not rally.get("iteration"):
        errors.append("Rally iteration must be specified on command line (-i)")
    if not rally.get("workspace"):
        errors.append(f"Rally workspace must be specified in either {config_file} or on command line (-w)")
    if not rally.get("project"):
        errors.append(f"Rally project must be specified in either {config_file} or on command line (-p)")
    if not rally.get("api_key"):
        errors.append(f"Rally API key must be specified in {config_file}")
    if not trello.get("developer_key"):
        errors.append(f"Trello API key must be specified in {config_file}")
    if not trello.get("user_token"):
        errors.append(f"Trello user token must be specified in {config_file}")
    if not trello.get("board"):
        errors.append(f"Trello board must be specified in either {config_file} or on command line (-b)")
    if not trello.get("list"):
        errors.append(f"Trello list must be specified in either {config_file} or on command line (-l)")

    order = str(rally.get("order") or "desc").lower()
    if order not in ORDERS:
        errors.append(f"Rally order must be one of {', '.join(ORDERS)} (got '{order}')")
    on_empty = str(rally.get("on_empty") or "warn").lower()
    if on_empty not in EMPTY_POLICIES:
        errors.append(f"Rally on_empty must be one of {', '.join(EMPTY_POLICIES)} (got '{on_empty}')")
    types = rally.get("types") or list(DEFAULT_ENTITY_TYPES)
    if not isinstance(types, list):
        errors.append("Rally types must be a list, e.g. [defect, story]")
    else:
        unknown = [t for t in types if t not in ENTITY_TYPES]
        if unknown:
            errors.append(f"Unknown Rally types {unknown} (known: {', '.join(ENTITY_TYPES)})")
    return errors


def build_config(merged: dict) -> Config:
    rally  = merged["rally"]
    trello = merged["trello"]
    return Config(
        rally=RallySettings(
            api_key=str(rally["api_key"]),
            workspace=str(rally["workspace"]),
            project=str(rally["project"]),
            iteration=str(rally["iteration"]),
            url=str(rally.get("url") or RALLY_URL),
            order=str(rally.get("order") or "desc").lower(),
            on_empty=str(rally.get("on_empty") or "warn").lower(),
            types=tuple(rally.get("types") or DEFAULT_ENTITY_TYPES),
        ),
        trello=TrelloSettings(
            developer_key=str(trello["developer_key"]),
            user_token=str(trello["user_token"]),
            board=str(trello["board"]),
            list=str(trello["list"]),
        ),
    )


def resolve_config(args: argparse.Namespace) -> Config:
    """Load the config file named by args, apply the CLI overrides and validate."""
    options = {k: v for k, v in vars(args).items() if k != "config"}
    merged = merge_options(load_config_file(args.config), options)
    errors = validate_config(merged, args.config)
    if errors:
        raise ConfigError(errors)
    return build_config(merged)


# ─────────────────────────────────────────────────────────────────────────────
# Rally WSAPI client
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WorkItem:
    formatted_id: str
    name:         str
    object_id:    str
    project_id:   str
    entity_type:  str

    @property
    def card_name(self) -> str:
        return f"{self.formatted_id}: {self.name}"

    @classmethod
    def from_rally(cls, record: dict, entity_type: str) -> "WorkItem":
        return cls(
            formatted_id=record.get("FormattedID", ""),
            name=record.get("Name", ""),
            object_id=str(record.get("ObjectID", "")),
            project_id=_ref_object_id(record.get("Project")),
            entity_type=entity_type,
        )


def _ref_object_id(ref: Optional[dict]) -> str:
    """ObjectID of a nested WSAPI reference, falling back to the tail of its _ref."""
    if not ref:
        return ""
    if ref.get("ObjectID"):
        return str(ref["ObjectID"])
    return (ref.get("_ref") or "").rstrip("/").rsplit("/", 1)[-1]


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class RallyClient:
    def __init__(self, api_key: str, workspace: str, project: str,
                 url: str = RALLY_URL) -> None:
        self.url = url.rstrip("/")
        self.base = f"{self.url}/webservice/{RALLY_WSAPI_VERSION}"
        self.workspace = workspace
        self.project = project
        self._headers = {"ZSESSIONID": api_key, "Accept": "application/json",
                         **RALLY_INTEGRATION_HEADERS}
        self._workspace_ref: Optional[str] = None
        self._project_ref: Optional[str] = None

    @property
    def host(self) -> str:
        return urlparse(self.url).netloc

    def _request(self, path: str, params: dict = None) -> dict:
        url = path if path.startswith("http") else f"{self.base}/{path.lstrip('/')}"
        try:
            resp = requests.get(url, headers=self._headers, params=params, timeout=60)
        except requests.exceptions.ConnectionError:
            raise SyncError(f"Connection error reaching Rally: {url}")
        except requests.exceptions.Timeout:
            raise SyncError(f"Rally request timed out: {url}")
        if resp.status_code == 401:
            raise SyncError("Rally authentication failed (401) — check your API key.")
        try:
            body = resp.json()
        except ValueError:
            raise SyncError(f"Rally {resp.status_code} GET {path}: {resp.text[:300]}")
        # WSAPI wraps results in QueryResult / OperationResult with an Errors list
        result = body.get("QueryResult") or body.get("OperationResult") or {}
        if result.get("Errors"):
            raise SyncError("Rally errors: " + " | ".join(result["Errors"]))
        if not resp.ok:
            raise SyncError(f"Rally {resp.status_code} GET {path}: {json.dumps(body)[:300]}")
        return body

    def _query(self, path: str, params: dict) -> list:
        return self._request(path, params)["QueryResult"].get("Results", [])

    def workspace_ref(self) -> str:
        if self._workspace_ref is None:
            sub = self._request("/subscription", {"fetch": "Workspaces"})["Subscription"]
            collection = (sub.get("Workspaces") or {}).get("_ref")
            if not collection:
                raise SyncError("Rally subscription has no workspaces.")
            workspaces = self._query(collection, {"fetch": "Name,ObjectID", "pagesize": 200})
            match = next((w for w in workspaces if w.get("Name") == self.workspace), None)
            if not match:
                raise SyncError(f"Rally workspace '{self.workspace}' not found. "
                                f"Available: {[w.get('Name') for w in workspaces]}")
            self._workspace_ref = match["_ref"]
        return self._workspace_ref

    def project_ref(self) -> str:
        if self._project_ref is None:
            projects = self._query("/project", {
                "workspace": self.workspace_ref(),
                "query":     f"(Name = {_quote(self.project)})",
                "fetch":     "Name,ObjectID",
            })
            if not projects:
                raise SyncError(f"Rally project '{self.project}' not found "
                                f"in workspace '{self.workspace}'.")
            self._project_ref = projects[0]["_ref"]
        return self._project_ref

    def find_iteration_items(self, iteration: str, entity_type: str,
                             order: str = "desc") -> list:
        """
        Fetch every item of entity_type ("story" / "defect") scheduled in the
        named iteration, ordered by FormattedID. Capped at RALLY_PAGE_SIZE.
        """
        meta = ENTITY_TYPES[entity_type]
        records = self._query(f"/{meta['wsapi']}", {
            "workspace": self.workspace_ref(),
            "project":   self.project_ref(),
            "query":     f"(Iteration.Name = {_quote(iteration)})",
            "fetch":     RALLY_FETCH,
            "order":     f"FormattedID {order}",
            "pagesize":  RALLY_PAGE_SIZE,
            "start":     1,
        })
        return [WorkItem.from_rally(r, entity_type) for r in records]


# ─────────────────────────────────────────────────────────────────────────────
# Trello REST API v1 client
# ─────────────────────────────────────────────────────────────────────────────

class TrelloClient:
    def __init__(self, developer_key: str, user_token: str,
                 base_url: str = TRELLO_API_URL) -> None:
        self.base = base_url.rstrip("/")
        self._auth = {"key": developer_key, "token": user_token}

    def _request(self, method: str, path: str, *, params=None,
                 expected=(200,)):
        url = f"{self.base}/{path.lstrip('/')}"
        try:
            resp = requests.request(method, url, params={**self._auth, **(params or {})},
                                    headers={"Accept": "application/json"}, timeout=60)
        except requests.exceptions.ConnectionError:
            raise SyncError(f"Connection error: {url}")
        except requests.exceptions.Timeout:
            raise SyncError(f"Timeout: {url}")
        if resp.status_code == 401:
            raise SyncError("Trello authentication failed (401) — "
                            "check developer_key and user_token.")
        if resp.status_code == 429:
            raise SyncError(f"Trello rate limit hit (429): {method} {path}")
        if resp.status_code not in expected:
            raise SyncError(f"Trello {resp.status_code} {method} {path}: {resp.text[:300]}")
        return resp.json() if resp.content else None

    def list_boards(self) -> list:
        return self._request("GET", "/members/me/boards",
                             params={"filter": "open", "fields": "name"}) or []

    def create_board(self, name: str) -> dict:
        return self._request("POST", "/boards", params={"name": name})

    def get_lists(self, board_id: str) -> list:
        return self._request("GET", f"/boards/{board_id}/lists",
                             params={"fields": "name"}) or []

    def create_list(self, name: str, board_id: str) -> dict:
        return self._request("POST", "/lists",
                             params={"name": name, "idBoard": board_id, "pos": "bottom"})

    def get_cards(self, list_id: str) -> list:
        return self._request("GET", f"/lists/{list_id}/cards",
                             params={"fields": "name"}) or []

    def create_card(self, name: str, list_id: str) -> dict:
        return self._request("POST", "/cards",
                             params={"name": name, "idList": list_id, "pos": "bottom"})

    def add_attachment(self, card_id: str, url: str, name: str) -> dict:
        return self._request("POST", f"/cards/{card_id}/attachments",
                             params={"url": url, "name": name})


def resolve_board(trello: TrelloClient, name: str) -> dict:
    """Find the board named exactly `name`, creating it if there is none."""
    board = next((b for b in trello.list_boards() if b.get("name") == name), None)
    if board is None:
        print(f"Creating board '{name}'")
        board = trello.create_board(name)
    return board


def resolve_list(trello: TrelloClient, name: str, board: dict) -> dict:
    """Find the list named exactly `name` on the board, creating it if there is none."""
    found = next((l for l in trello.get_lists(board["id"]) if l.get("name") == name), None)
    if found is None:
        print(f"Creating list '{name}'")
        found = trello.create_list(name, board["id"])
    return found


# ─────────────────────────────────────────────────────────────────────────────
# Card import
# ─────────────────────────────────────────────────────────────────────────────

class CardImporter:
    """
    Creates cards in one Trello list, skipping any whose name is already
    there. Existing names are fetched once per run; cards created during the
    run are added to the same set.
    """

    def __init__(self, trello: TrelloClient, trello_list: dict) -> None:
        self.trello = trello
        self.list = trello_list
        self.created: list = []
        self.skipped: list = []
        self._names: Optional[set] = None

    def existing_names(self) -> set:
        if self._names is None:
            self._names = {c.get("name") for c in self.trello.get_cards(self.list["id"])}
        return self._names

    def import_card(self, card_name: str, attachment_name: str, attachment_url: str) -> bool:
        if card_name in self.existing_names():
            print(f"Card '{card_name}' already exists")
            self.skipped.append(card_name)
            return False
        print(f"Creating card: {card_name}")
        card = self.trello.create_card(card_name, self.list["id"])
        self.trello.add_attachment(card["id"], attachment_url, attachment_name)
        self._names.add(card_name)
        self.created.append(card_name)
        return True


def build_item_url(host: str, project_id: str, item: WorkItem) -> str:
    path = ENTITY_TYPES[item.entity_type]["path"]
    return f"https://{host}/#/{project_id}d/detail/{path}/{item.object_id}"


def import_items_as_cards(items: list, entity_type: str,
                          importer: CardImporter, host: str) -> None:
    if not items:
        return
    project_id = items[0].project_id
    label = ENTITY_TYPES[entity_type]["label"]
    for item in items:
        importer.import_card(item.card_name, label, build_item_url(host, project_id, item))


def fetch_iteration_items(rally: RallyClient, settings: RallySettings) -> dict:
    """
    Query Rally for each configured entity type. Returns {entity_type: [WorkItem]}
    in the configured order. An empty type is reported; with on_empty == "abort"
    it also raises EmptyIterationError once every type has been queried.
    """
    results: dict = {}
    empty = []
    for entity_type in settings.types:
        items = rally.find_iteration_items(settings.iteration, entity_type, settings.order)
        if not items:
            print(f"No {ENTITY_TYPES[entity_type]['noun']} found "
                  f"for iteration '{settings.iteration}'")
            empty.append(entity_type)
        results[entity_type] = items
    if empty and settings.on_empty == "abort":
        raise EmptyIterationError(
            f"iteration '{settings.iteration}' has no "
            + " and no ".join(ENTITY_TYPES[t]["noun"] for t in empty))
    return results


def run(config: Config, rally: RallyClient, trello: TrelloClient) -> dict:
    items_by_type = fetch_iteration_items(rally, config.rally)

    board = resolve_board(trello, config.trello.board)
    trello_list = resolve_list(trello, config.trello.list, board)
    print(f"Importing to board '{board['name']}'")
    print(f"Importing to list '{trello_list['name']}'")

    importer = CardImporter(trello, trello_list)
    for entity_type, items in items_by_type.items():
        import_items_as_cards(items, entity_type, importer, rally.host)

    return {
        "created":     importer.created,
        "skipped":     importer.skipped,
        "empty_types": [t for t, items in items_by_type.items() if not items],
    }


def print_summary(report: dict) -> None:
    print()
    print(f"  Cards created:  {len(report['created'])}")
    print(f"  Cards skipped:  {len(report['skipped'])}  (already in list)")
    if report["empty_types"]:
        nouns = [ENTITY_TYPES[t]["noun"] for t in report["empty_types"]]
        print(f"  ⚠  Nothing found for: {', '.join(nouns)}")
    print()


def main(argv: list = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        config = resolve_config(args)
    except ConfigError as exc:
        for err in exc.errors:
            print(err)
        parser.print_help()
        return 1

    W = 60
    print("╔" + "═" * (W - 2) + "╗")
    print("║" + "  RALLY → TRELLO IMPORT".center(W - 2) + "║")
    print("╚" + "═" * (W - 2) + "╝")
    print(f"Iteration: {config.rally.iteration}  "
          f"({config.rally.workspace} / {config.rally.project})")

    rally = RallyClient(config.rally.api_key, config.rally.workspace,
                        config.rally.project, config.rally.url)
    trello = TrelloClient(config.trello.developer_key, config.trello.user_token)
    try:
        report = run(config, rally, trello)
    except (SyncError, EmptyIterationError) as exc:
        print(f"Error: {exc}")
        return 1

    print_summary(report)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\nAborted.")
        sys.exit(1)
