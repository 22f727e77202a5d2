# chatserve

Building blocks for a chat backend on Starlette. There are two sides:

* a **websocket hub**. It keeps track of open connections and routes chat
  events to the connections that care about them: subscribing to chats,
  choosing the current chat, creating messages and updating message statuses.
* an **HTTP API**. It serves a service description, a health check and an
  authenticated `/users` resource. Users are looked up through an external
  user service.

## Modules

| Module | What it gives you |
| --- | --- |
| `chatserve.errors` | `ErrorData` and the typed errors `BadRequestError`, `ValidationError`, `UnauthorizedError`, `ForbiddenError`, `NotFoundError`, `UserNotFoundError`, `DatabaseError` and `UndefinedError`, plus `truncate_error_data` |
| `chatserve.domain` | `User`, `Image`, `UserFilter`, `Sort`, `SortDirection`, `user_from_context`, `token_from_context` |
| `chatserve.dto` | `UserDto`, `Page`, `user_to_dto`, `user_from_dto`, `sort_from_dto` |
| `chatserve.validation` | `Validator` (`struct`, `var`), `is_valid_name`, `is_valid_username`, `is_valid_password` |
| `chatserve.logs` | `Level`, `JsonFormatter`, `new_logger` |
| `chatserve.connector` | `Event`, `WebSocketConnection`, `Connector`, `ConnectorAlreadyStartedError` |
| `chatserve.chat_ws` | `EventType`, `NewMessage`, `MessageDto`, `MessagesStatusDto`, `ChatConnection`, `message_to_dto`, `message_from_create_dto`, `EventHandler` |
| `chatserve.api` | `create_app`, `error_handler`, `status_for_error`, `Environment`, `HTTPServer`, `ServerAlreadyStartedError` |
| `chatserve.user_service` | `UserService` (an async HTTP client for the user service) and `UserServiceContract` |
| `chatserve.user_http` | `UserQuery`, `user_filter_from_query`, `AuthMiddleware`, `UserController` |

## Wiring the HTTP API

```python
import asyncio

from chatserve.api import Environment, HTTPServer, create_app
from chatserve.logs import new_logger
from chatserve.user_http import AuthMiddleware, UserController
from chatserve.user_service import UserService
from chatserve.validation import Validator

log = new_logger("debug")
validator = Validator()

users = UserService(
    "https://users.example.com/users/current",
    "https://users.example.com/users",
    None,
)
auth = AuthMiddleware(users)
controller = UserController(validator, auth, users)

app = create_app(log, Environment("development"), "0.1.0", [controller])
server = HTTPServer(app, "127.0.0.1", 8080)

asyncio.run(server.start())
```

`HTTPServer.start()` is a coroutine. It serves the application with uvicorn
until `HTTPServer.stop()` is called. A second `start()` while one is running
raises `ServerAlreadyStartedError`.

`create_app` installs these routes:

* `GET /` returns `{"service": "chatserve", "version": <version>}`.
* `GET /healthz` answers `200 OK`.

Each controller adds its own routes. The app also logs every request as one
JSON line at info level and allows CORS from any origin.

### The `/users` resource

`UserController.routes()` provides `GET /users/current`, `GET /users` and
`GET /users/{user_id}`. Every route first runs `AuthMiddleware.authenticate`.

`authenticate` takes the token from the `token` query parameter. If that is
missing, it reads an `Authorization: Bearer token` header. It then asks the
user service for the current user and stores the token and the user on
`request.state`.

The listing accepts these query parameters:

* `ids`, `emails`, `usernames` and `roles`, each of which may repeat;
* `search`, `limit` and `offset`;
* `sort`, for example `sort=username,desc`. The allowed fields are `id`,
  `email`, `username`, `role`, `firstName` and `lastName`.

The listing returns `{"items": [...], "count": n}`.

`UserService` sends the bearer token to the two endpoints it was given.

## Errors

Every error carries a domain, a type, a data map and optional developer
details. `str(error)` is its JSON form.

`error_handler` maps errors to HTTP statuses with `status_for_error`:

| Error | Status |
| --- | --- |
| `BadRequestError`, `ValidationError` | 400 |
| `UnauthorizedError` | 401 |
| `ForbiddenError` | 403 |
| `NotFoundError`, `UserNotFoundError` | 404 |
| Starlette `HTTPException` | its own status |
| anything else | 500, wrapped in `UndefinedError` |

The handler adds the request path to the data and logs the error. Errors below
500 are logged at debug level and the rest at error level. It then writes the
error as JSON. Outside `Environment.DEVELOPMENT`, the body goes through
`truncate_error_data`, which leaves out the stack, the error message and the
developer details.

## Validation

`Validator.struct(domain, obj)` checks a dataclass instance. The rules are
taken from field metadata under the key `"validate"`, for example
`field(metadata={"validate": "required,oneof=2 3"})`.

The supported tags are `required`, `omitempty`, `dive`, `gt`, `gte`, `lt`,
`lte`, `min`, `max`, `oneof`, `email`, `name`, `username` and `password`.

`Validator.var(domain, value, tags)` checks a single value.

Both raise `ValidationError` when a check fails.

## Logging

`new_logger(level)` returns a `logging.Logger` that writes JSON lines with the
keys `level`, `msg` and `time` to stderr. The level names accepted are `panic`,
`fatal`, `error`, `warn`, `warning`, `info`, `debug` and `trace`. Any other
name raises `ValueError`.

## The websocket hub

A `Connector` holds connections. Each incoming frame is a JSON `Event` of the
form `{"type": <int>, "data": <json>}`, and the connector passes it to an event
handler.

`Connector.start(stop)` removes closed connections every 60 seconds. When the
`stop` event is set, it closes every connection and returns.

The chat `EventHandler` understands these event types:

| Event | Effect |
| --- | --- |
| `SUBSCRIBE_CHATS` (data: a list of chat ids) | sets the connection's subscribed chats |
| `SET_CURRENT_CHAT` (data: a chat id) | sets the connection's current chat |
| `UNSUBSCRIBE_CHATS` | clears the current chat |
| `UNSET_CURRENT_CHAT` | clears the subscribed chats |
| `CREATE_MESSAGE` | see below |
| `UPDATE_MESSAGES_STATUS` (data: `{"status": 2 or 3, "messageIds": [...]}`) | see below |

`EDIT_MESSAGE` and `DELETE_MESSAGE` are accepted and ignored.

**Creating a message.** The message is created through the message service in
the connection's current chat. It is then sent to every other connection whose
current chat or subscriptions include that chat. The sender gets the message
back with the `uuid` it sent.

**Updating statuses.** The new status is validated and applied through the
message service. The update is then sent to every connection following the
chat, the sender included.

You supply the message service. It needs two methods, each of which may be a
plain function or a coroutine:

* `create_message(new_message)` takes a `NewMessage`. It returns an object with
  `id`, `text`, `status`, `chat_id`, `creator`, `created_by`, `created_at` and
  `updated_at`, or `None`.
* `update_message_status(message_ids, status)`.

The connection objects speak the Starlette websocket interface, so an endpoint
can hand them an accepted socket:

```python
from chatserve.chat_ws import ChatConnection, EventHandler
from chatserve.connector import Connector

connector = Connector(log, EventHandler(validator, message_service))

async def chat_endpoint(websocket):
    user = await users.get_current_user(websocket.query_params["token"])
    await websocket.accept()
    conn = ChatConnection(websocket, user)
    connector.add_connection(conn)
    await conn.connect()
```

`await conn.connect()` returns when the client disconnects.

## What is not included

The package has no command-line entry point and no configuration loading.

It has no message storage: messages are stored only through the message
service you pass in.

`create_app` does not mount a websocket route. Wiring the hub into an
application, as in the example above, is left to you.