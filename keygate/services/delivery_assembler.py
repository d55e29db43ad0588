"""
Delivery assembler - renders executable Lua wrappers around stored artifacts

Each call draws fresh local identifier names so no two deliveries of the same
artifact are byte-identical. This is cosmetic: it defeats naive hash-based
signature matching of served wrappers and nothing else. Validation never
depends on it.
"""

import json
import secrets
from typing import Callable, Iterable, Optional
from urllib.parse import quote

from ..errors import ErrorKind, MESSAGES
from ..models.protected_payload import ProtectedPayload, PayloadKind
from ..utils.content_codec import split_seed, LCG_MULTIPLIER, LCG_INCREMENT, LCG_MODULUS

BANNER = "-- KeyGate Loader"

_INLINE_EXEC = """    local {fn}, {err} = loadstring({text})
    if not {fn} then error("[KeyGate] " .. tostring({err}), 0) end
    {fn}()"""

_INDIRECTION_EXEC = """    local {fn}, {err} = loadstring(game:HttpGet({text}, true))
    if not {fn} then error("[KeyGate] " .. tostring({err}), 0) end
    {fn}()"""

_WRAPPER = """{banner}
-- {label}
do
    local {data}  = {table}
    local {seed}  = bit32 and bit32.bor(bit32.lshift({seed_hi}, 16), {seed_lo}) or ({seed_hi} * 65536 + {seed_lo})
    local {state} = {seed}
    local {out}   = {{}}
    for {i} = 1, #{data} do
        {state} = ({state} * {mul} + {inc}) % {mod}
        {out}[{i}] = string.char(bit32 and bit32.bxor({data}[{i}], {state} % 256)
                                or ({data}[{i}] ~ ({state} % 256)))
    end
    local {text} = table.concat({out})
{execute}
end
"""

_STUB = """{banner}
-- Usage: script_key = "YOUR-KEY"; loadstring(game:HttpGet("{stub_url}"))()
local {hash_var} = "{payload_hash}"
local {url_var}  = "{delivery_url}"

local {key_var} = (getgenv and getgenv().script_key)
         or (genv and genv().script_key)
         or (getfenv and getfenv(0).script_key)

if not {key_var} or {key_var} == "" then
    error("[KeyGate] No key set. Run this first: script_key=\\"YOUR-KEY\\"", 0)
end

local {hs_var} = game:GetService("HttpService")
local {ok_var}, {hwid_var} = pcall(function()
    return game:GetService("RbxAnalyticsService"):GetClientId()
end)
local {name_ok_var}, {name_var} = pcall(function()
    return game:GetService("Players").LocalPlayer.Name
end)

local {query_var} = "key="      .. {hs_var}:UrlEncode({key_var}) ..
            "&hwid="     .. {hs_var}:UrlEncode({ok_var} and {hwid_var} or "unknown") ..
            "&identity=" .. {hs_var}:UrlEncode({name_ok_var} and {name_var} or "unknown")

local {fn_var}, {err_var} = loadstring(game:HttpGet({url_var} .. "?" .. {query_var}, true))
if not {fn_var} then error("[KeyGate] " .. tostring({err_var}), 0) end
{fn_var}()
"""

_LOCALS = ("data", "seed", "state", "out", "i", "text", "fn", "err")
_STUB_LOCALS = ("hash_var", "url_var", "key_var", "hs_var", "ok_var", "hwid_var",
                "name_ok_var", "name_var", "query_var", "fn_var", "err_var")


def random_identifier() -> str:
    """``_`` followed by 8 random hex characters"""
    return "_" + secrets.token_hex(4)


def lua_string(value: str) -> str:
    """Quote a value as a Lua string literal"""
    # JSON string escaping is a valid subset of Lua's
    return json.dumps(value)


def to_lua_table(data: Iterable[int]) -> str:
    return "{" + ",".join(str(b) for b in data) + "}"


class DeliveryAssembler:
    """
    Builds the Lua artifacts served to executors

    Pure: reads the payload it is given and a random source, performs no I/O,
    and never mutates keys or payloads.
    """

    def __init__(self, identifier_factory: Callable[[], str] = random_identifier):
        """
        Args:
            identifier_factory: Source of local variable names
        """
        self.identifier_factory = identifier_factory

    def _fresh_names(self, roles) -> dict:
        names = {}
        used = set()
        for role in roles:
            name = self.identifier_factory()
            while name in used:
                name = self.identifier_factory()
            used.add(name)
            names[role] = name
        return names

    def assemble(self, payload: ProtectedPayload, label: Optional[str] = None) -> str:
        """
        Wrap a stored artifact in a self-decoding Lua wrapper

        Inline payloads are executed directly after decoding; indirection
        payloads decode to a URL the executor fetches and then executes.
        """
        names = self._fresh_names(_LOCALS)
        seed_hi, seed_lo = split_seed(payload.seed)
        template = _INDIRECTION_EXEC if payload.kind is PayloadKind.INDIRECTION else _INLINE_EXEC
        execute = template.format(fn=names['fn'], err=names['err'], text=names['text'])
        return _WRAPPER.format(
            banner=BANNER,
            label=_single_line(label or payload.label or "Protected Script"),
            table=to_lua_table(payload.encoded),
            seed_hi=seed_hi,
            seed_lo=seed_lo,
            mul=LCG_MULTIPLIER,
            inc=LCG_INCREMENT,
            mod=LCG_MODULUS,
            execute=execute,
            **names,
        )

    def assemble_stub(self, payload_hash: str, delivery_url: str) -> str:
        """
        Keyless loader: tells the executor to re-request ``delivery_url``
        with its key, device fingerprint and identity attached
        """
        names = self._fresh_names(_STUB_LOCALS)
        return _STUB.format(
            banner=BANNER,
            stub_url=delivery_url,
            payload_hash=payload_hash,
            delivery_url=delivery_url,
            **names,
        )

    def assemble_denial(self, kind: ErrorKind, message: Optional[str] = None) -> str:
        """A one-line Lua error so executors show why access was refused"""
        text = message or MESSAGES.get(kind, kind.value)
        return f'error({lua_string("[KeyGate] " + text)}, 0)\n'


def build_delivery_url(public_url: str, payload_hash: str) -> str:
    return f"{public_url.rstrip('/')}/files/loader/{quote(payload_hash)}.lua"


def _single_line(text: str) -> str:
    return " ".join(text.split())
