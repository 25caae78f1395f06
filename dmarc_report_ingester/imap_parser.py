"""Grammar for the IMAP4rev1 server responses used by the mailbox connector.

Rule names follow the formal syntax of RFC 3501. Only the responses needed to
log in, select a mailbox, search, fetch message bodies, and change flags are
modelled in detail. Other FETCH items and untagged responses are consumed by
permissive fallback rules so that unexpected data does not break the response
stream.
"""

from bite import (
    And,
    CaselessLiteral,
    CharacterSet,
    Combine,
    Counted,
    FixedByteCount,
    Forward,
    Literal,
    Opt,
    Parser,
    Suppress,
    TransformValues,
)
from bite.transformers import Group

# Lexical primitives
CTL = bytes(range(0x1F + 1)) + bytes(range(0x7F, 0x9F + 1))

sp = Suppress(CharacterSet(b" \t")[1, ...])
crlf = Suppress(Literal(b"\r\n"))
nil = CaselessLiteral(b"NIL")

atom_char = CharacterSet(rb'(){ %*"\]' + CTL, invert=True)
atom = Combine(atom_char[1, ...])
astring_char = atom_char | Literal(b"]")

number = TransformValues(
    Combine(CharacterSet(b"0123456789")[1, ...]),
    lambda values: tuple(int(v) for v in values),
)

quoted = (
    Suppress(Literal(b'"'))
    + Combine(CharacterSet(b'"', invert=True)[0, ...])
    + Suppress(Literal(b'"'))
)
literal = Counted(
    Suppress(Literal(b"{")) + number + Suppress(Literal(b"}") + crlf),
    FixedByteCount,
)
string = quoted | literal
astring = Combine(astring_char[1, ...]) | string
nstring = string | nil
text = Combine(CharacterSet(b"\r\n", invert=True)[0, ...])


def parenthesized_list(items_expr: Parser) -> Parser:
    return Group(
        Suppress(Literal(b"("))
        + Opt(sp)
        + Opt(items_expr + (sp + items_expr)[0, ...])
        + Opt(sp)
        + Suppress(Literal(b")"))
    )


def keyword_value(keyword_expr: Parser, value_expr: Parser) -> Parser:
    return Group(And([keyword_expr, sp, value_expr]))


flag = Combine(Literal(b"\\") + atom) | atom
flag_perm = flag | Literal(rb"\*")
flag_list = parenthesized_list(flag)

# FETCH items. Report messages are retrieved with "UID BODY.PEEK[]", answered
# by the server as "UID <n> BODY[] <literal>".
header_list = parenthesized_list(astring)
section_msgtext = (
    (
        CaselessLiteral(b"HEADER.FIELDS")
        + Opt(CaselessLiteral(b".NOT"))
        + Opt(sp)
        + header_list
    )
    | CaselessLiteral(b"HEADER")
    | CaselessLiteral(b"TEXT")
)
section_part = number + (Suppress(Literal(b".")) + number)[0, ...]
section_spec = section_msgtext | (
    section_part
    + Opt(Suppress(Literal(b".")) + (section_msgtext | CaselessLiteral(b"MIME")))
)
section = Suppress(Literal(b"[")) + Group(Opt(section_spec)) + Suppress(Literal(b"]"))
partial = Suppress(Literal(b"<")) + number + Suppress(Literal(b">"))

nested_list = Forward()
nested_list.assign(
    parenthesized_list(
        nstring | nested_list | Combine(CharacterSet(b" )", invert=True)[1, ...])
    )
)

msg_att_body_section = keyword_value(
    CaselessLiteral(b"BODY") + section + Opt(partial), nstring
)
msg_att_uid = keyword_value(CaselessLiteral(b"UID"), number)
msg_att_flags = keyword_value(CaselessLiteral(b"FLAGS"), flag_list)
msg_att_rfc822 = keyword_value(CaselessLiteral(b"RFC822"), nstring)
# BODYSTRUCTURE, INTERNALDATE, RFC822.SIZE, and extension items
msg_att_other = keyword_value(
    Combine(CharacterSet(b" \t\r\n[<", invert=True)[1, ...])
    + Opt(
        Combine(Literal(b"[") + CharacterSet(b"]", invert=True)[0, ...] + Literal(b"]"))
    )
    + Opt(partial),
    nil | number | nstring | nested_list,
)
msg_att = (
    msg_att_body_section | msg_att_uid | msg_att_flags | msg_att_rfc822 | msg_att_other
)

fetch_response_line = (
    number + sp + CaselessLiteral(b"FETCH") + Opt(sp) + parenthesized_list(msg_att)
)

# Untagged SEARCH result: the matching message numbers (or UIDs for UID SEARCH)
search_response_line = CaselessLiteral(b"SEARCH") + (sp + number)[0, ...] + Opt(sp)

# Status responses
capability_data = Group(CaselessLiteral(b"CAPABILITY") + (sp + atom)[1, ...])
resp_text_code = (
    CaselessLiteral(b"ALERT")
    | Group(CaselessLiteral(b"BADCHARSET") + Opt(sp) + Opt(parenthesized_list(astring)))
    | capability_data
    | CaselessLiteral(b"PARSE")
    | Group(
        CaselessLiteral(b"PERMANENTFLAGS") + Opt(sp) + parenthesized_list(flag_perm)
    )
    | CaselessLiteral(b"READ-ONLY")
    | CaselessLiteral(b"READ-WRITE")
    | CaselessLiteral(b"TRYCREATE")
    | Group(CaselessLiteral(b"UIDNEXT") + sp + number)
    | Group(CaselessLiteral(b"UIDVALIDITY") + sp + number)
    | Group(CaselessLiteral(b"UNSEEN") + sp + number)
    | Group(atom + Opt(sp + Combine(CharacterSet(b"\r\n]", invert=True)[1, ...])))
)
resp_text = Opt(
    Suppress(Literal(b"["))
    + resp_text_code
    + Suppress(Literal(b"]"))
    + Suppress(Opt(sp))
) + (~Literal(b"[") + text)
resp_cond_state = (
    CaselessLiteral(b"OK") | CaselessLiteral(b"NO") | CaselessLiteral(b"BAD")
)
tag = ~Literal(b"+") + Combine(astring_char[1, ...])
response_tagged = tag + sp + resp_cond_state + sp + resp_text

# Untagged responses
resp_cond_untagged = (resp_cond_state | CaselessLiteral(b"PREAUTH")) + sp + resp_text
resp_cond_bye = CaselessLiteral(b"BYE") + sp + text
capability_response = CaselessLiteral(b"CAPABILITY") + sp + text
mailbox_flags = CaselessLiteral(b"FLAGS") + sp + flag_list
message_data = number + sp + (
    CaselessLiteral(b"EXISTS")
    | CaselessLiteral(b"RECENT")
    | CaselessLiteral(b"EXPUNGE")
)
unknown_untagged = (
    Combine(CharacterSet(b"{\r\n", invert=True)[1, ...]) + Opt(literal)
)[0, ...]

response_untagged = (
    Literal(b"*")
    + sp
    + (
        resp_cond_bye
        | capability_response
        | search_response_line
        | mailbox_flags
        | message_data
        | fetch_response_line
        | resp_cond_untagged
        | (CaselessLiteral(b"OK") + sp + text)
        | unknown_untagged
    )
)
response_continue = Literal(b"+") + sp + text
response = (response_continue | response_untagged | response_tagged) + crlf
