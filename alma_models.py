"""
Canonical records for the Alma resources the toolkit reads and writes.

Each record knows how to build itself from the API's XML (`from_xml`). Only the fields the
toolkit uses are modelled; holdings keep their whole parsed record so a PUT sends back every
field, including the ones not modelled here.

XSDs: https://developers.exlibrisgroup.com/alma/apis/xsd/
"""

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from alma_errors import ResponseParseError


## helpers ----------------------------------------------------------


def parse_xml(body: bytes, what: str, root_tag: str | None = None) -> ET.Element:
    """
    Parses a response body, optionally requiring a particular root element.
    Raises ResponseParseError (with the body text, for diagnostics) on failure.
    """
    text: str = body.decode('utf-8', errors='replace')
    try:
        root: ET.Element = ET.fromstring(body)
    except ET.ParseError as exc:
        raise ResponseParseError(what, str(exc), text) from exc
    if root_tag is not None and root.tag != root_tag:
        raise ResponseParseError(what, f'expected element <{root_tag}> but got <{root.tag}>', text)
    return root


def _text(element: ET.Element | None, path: str) -> str:
    if element is None:
        return ''
    found: ET.Element | None = element.find(path)
    if found is None or found.text is None:
        return ''
    return found.text.strip()


def _int(element: ET.Element, path: str) -> int:
    raw: str = _text(element, path)
    return int(raw) if raw.isdigit() else 0


@dataclass(frozen=True)
class CodedValue:
    """
    An Alma code plus its human description, like `<library desc="Main Library">MAIN</library>`.
    """

    code: str = ''
    desc: str = ''

    @classmethod
    def from_xml(cls, element: ET.Element | None) -> 'CodedValue':
        if element is None:
            return cls()
        return cls(code=(element.text or '').strip(), desc=element.get('desc', ''))

    def __str__(self) -> str:
        return f'{self.code} ({self.desc})'


## sets -------------------------------------------------------------


@dataclass(frozen=True)
class AlmaSet:
    """
    A named collection of records.
    - `content` is the record kind (eg ITEM, BIB_MMS).
    - `type` is the membership kind: ITEMIZED (enumerated) or LOGICAL (query-defined).
    - `number_of_members` is the size Alma declares; fetched members must match it.
    """

    id: str
    name: str
    number_of_members: int
    content: str
    type: str
    link: str

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'AlmaSet':
        return cls(
            id=_text(element, 'id'),
            name=_text(element, 'name'),
            number_of_members=_int(element, 'number_of_members'),
            content=_text(element, 'content'),
            type=_text(element, 'type'),
            link=element.get('link', ''),
        )


@dataclass(frozen=True)
class Member:
    """
    One member of a set: an ID plus the API link of the underlying record.
    """

    id: str
    link: str

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'Member':
        return cls(id=_text(element, 'id'), link=element.get('link', ''))


## items and requests -----------------------------------------------


@dataclass(frozen=True)
class Item:
    mms_id: str
    title: str
    author: str
    call_number: str
    barcode: str
    link: str = ''

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'Item':
        return cls(
            mms_id=_text(element, 'bib_data/mms_id'),
            title=_text(element, 'bib_data/title'),
            author=_text(element, 'bib_data/author'),
            call_number=_text(element, 'holding_data/call_number'),
            barcode=_text(element, 'item_data/barcode'),
            link=element.get('link', ''),
        )


@dataclass(frozen=True)
class UserRequest:
    """
    A user request on an item, tagged with the set member it was found on.
    """

    id: str
    type: str
    sub_type: str
    member: Member

    @classmethod
    def from_xml(cls, element: ET.Element, member: Member) -> 'UserRequest':
        return cls(
            id=_text(element, 'request_id'),
            type=_text(element, 'request_type'),
            sub_type=_text(element, 'request_sub_type'),
            member=member,
        )

    def matches(self, request_type: str, sub_type: str) -> bool:
        """
        An empty filter matches any value for that field; otherwise the match is exact.
        """
        return (request_type == '' or request_type == self.type) and (sub_type == '' or sub_type == self.sub_type)

    @property
    def link(self) -> str:
        return f'{self.member.link}/requests/{self.id}'


## holdings ---------------------------------------------------------


@dataclass(frozen=True)
class HoldingListMember:
    """
    A holding summary as listed under a bib record; not the full holding.
    """

    holding_id: str
    link: str
    library: CodedValue
    location: CodedValue
    call_number: str

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'HoldingListMember':
        return cls(
            holding_id=_text(element, 'holding_id'),
            link=element.get('link', ''),
            library=CodedValue.from_xml(element.find('library')),
            location=CodedValue.from_xml(element.find('location')),
            call_number=_text(element, 'call_number'),
        )


@dataclass
class Holding:
    """
    A full holding record. `element` is the whole parsed <holding> document and is
    edited in place, so serialising it sends back every field Alma gave us.
    """

    holding_id: str
    link: str
    element: ET.Element

    @classmethod
    def from_xml(cls, element: ET.Element, link: str) -> 'Holding':
        return cls(holding_id=_text(element, 'holding_id'), link=link, element=element)

    def datafields(self, tag: str) -> list[ET.Element]:
        return [df for df in self.element.iterfind('record/datafield') if df.get('tag') == tag]

    def subfields(self, tag: str, codes: tuple[str, ...]) -> list[ET.Element]:
        found: list[ET.Element] = []
        for datafield in self.datafields(tag):
            for subfield in datafield.iterfind('subfield'):
                if subfield.get('code') in codes:
                    found.append(subfield)
        return found

    def call_number(self) -> str:
        """
        Returns the 852 $h and $i parts, separated with a space.
        """
        callnumber: str = ''
        for datafield in self.datafields('852'):
            for subfield in datafield.iterfind('subfield'):
                if subfield.get('code') == 'h':
                    callnumber = subfield.text or ''
            for subfield in datafield.iterfind('subfield'):
                if subfield.get('code') == 'i':
                    callnumber = f'{callnumber} {subfield.text or ""}'
        return callnumber

    def to_xml(self) -> bytes:
        return ET.tostring(self.element, encoding='utf-8')

    def copy(self) -> 'Holding':
        return Holding(self.holding_id, self.link, ET.fromstring(self.to_xml()))


## configuration ----------------------------------------------------


@dataclass(frozen=True)
class CodeTableRow:
    code: str
    description: str
    default: str
    enabled: str


@dataclass(frozen=True)
class CodeTable:
    name: str
    description: str
    sub_system: CodedValue
    patron_facing: str
    language: CodedValue
    scope_institution: CodedValue
    scope_library: CodedValue
    rows: tuple[CodeTableRow, ...] = ()

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'CodeTable':
        rows: tuple[CodeTableRow, ...] = tuple(
            CodeTableRow(
                code=_text(row, 'code'),
                description=_text(row, 'description'),
                default=_text(row, 'default'),
                enabled=_text(row, 'enabled'),
            )
            for row in element.iterfind('rows/row')
        )
        return cls(
            name=_text(element, 'name'),
            description=_text(element, 'description'),
            sub_system=CodedValue.from_xml(element.find('sub_system')),
            patron_facing=_text(element, 'patron_facing'),
            language=CodedValue.from_xml(element.find('language')),
            scope_institution=CodedValue.from_xml(element.find('scope/institution_id')),
            scope_library=CodedValue.from_xml(element.find('scope/library_id')),
            rows=rows,
        )


@dataclass(frozen=True)
class Library:
    code: str
    name: str
    description: str
    resource_sharing: str
    campus: CodedValue
    proxy: str
    default_location: CodedValue

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'Library':
        return cls(
            code=_text(element, 'code'),
            name=_text(element, 'name'),
            description=_text(element, 'description'),
            resource_sharing=_text(element, 'resource_sharing'),
            campus=CodedValue.from_xml(element.find('campus')),
            proxy=_text(element, 'proxy'),
            default_location=CodedValue.from_xml(element.find('default_location')),
        )


@dataclass(frozen=True)
class Operator:
    primary_id: str
    full_name: str


@dataclass(frozen=True)
class Department:
    code: str
    name: str
    type: CodedValue
    work_days: str
    printer: CodedValue
    owner: CodedValue
    served_libraries: tuple[CodedValue, ...] = field(default_factory=tuple)
    operators: tuple[Operator, ...] = field(default_factory=tuple)

    @classmethod
    def from_xml(cls, element: ET.Element) -> 'Department':
        return cls(
            code=_text(element, 'code'),
            name=_text(element, 'name'),
            type=CodedValue.from_xml(element.find('type')),
            work_days=_text(element, 'work_days'),
            printer=CodedValue.from_xml(element.find('printer')),
            owner=CodedValue.from_xml(element.find('owner')),
            served_libraries=tuple(
                CodedValue.from_xml(lib) for lib in element.iterfind('served_libraries/library')
            ),
            operators=tuple(
                Operator(primary_id=_text(op, 'primary_id'), full_name=_text(op, 'full_name'))
                for op in element.iterfind('operators/operator')
            ),
        )
