"""
Bulk operations over set members (and other lists of lookups).

Every operation follows the same shape: one job per item through `run_jobs()`, each job
making one API call, with read-then-act operations split into stages (eg fetch requests,
then delete the matching ones). A failed item is recorded and its siblings continue;
a cancellation-class error (threshold reached, interrupt) stops the later stages.
"""

import logging
from dataclasses import dataclass
from urllib.parse import quote

from alma_cancel import CancelScope
from alma_client import AlmaClient
from alma_dispatch import OperationResult, run_jobs
from alma_models import (
    CodeTable,
    Department,
    Holding,
    HoldingListMember,
    Item,
    Library,
    Member,
    UserRequest,
    parse_xml,
)
from call_numbers import clean_call_number

log = logging.getLogger(__name__)

DEFAULT_CIRC_DESK: str = 'DEFAULT_CIRC_DESK'
CALL_NUMBER_TAG: str = '852'
CALL_NUMBER_CODES: tuple[str, ...] = ('h', 'i')

## known code tables; see https://developers.exlibrisgroup.com/blog/almas-code-tables-api-list-of-code-tables/
CODE_TABLE_NAMES: tuple[str, ...] = (
    'accessionPlacementsOptions',
    'AcqItemSourceType',
    'AcquisitionMethod',
    'ActiveResourcesTypes',
    'AddNewUserOptions',
    'AdminURIType',
    'ARTEmailDeliveryKeywords',
    'ARTEmailQueriesKeywords',
    'ARTEmailServiceKeywords',
    'AssertionCodes',
    'BaseStatus',
    'BLDSSDigitalFormats',
    'BooleanYesNo',
    'CalendarRecordStatuses',
    'CalendarRecordsTypes',
    'CallNumberType',
    'CampusListSearchableColumns',
    'CatalogerLevel',
    'CitationAttributes',
    'CitationAttributesTypes',
    'CitationCopyRights',
    'CollectionAccessType',
    'ContentStructureStatus',
    'CounterPlatform',
    'CountryCodes',
    'CourseTerms',
    'CoverageInUse',
    'crossRefEnabled',
    'CrossRefSupported',
    'Currency_CT',
    'DaysOfWeek',
    'DigitalRepresentationBaseStatus',
    'EDINamingConvention',
    'EdiPreference',
    'EdiType',
    'ElectronicBaseStatus',
    'electronicMaterialType',
    'ElectronicPortfolioBaseStatus',
    'ExpiryType',
    'ExternalSystemTypes',
    'FineFeeTransactionType',
    'FTPMode',
    'FTPSend',
    'FundType',
    'Genders',
    'GroupProxyEnabled',
    'HFrUserFinesFees.fineFeeStatus',
    'HFrUserFinesFees.fineFeeType',
    'HFrUserRoles.roleType',
    'HfundLedger.status',
    'HFundsTransactionItem.reportingCode',
    'HItemLoan.processStatus',
    'HLicense.status',
    'HLicense.type',
    'HLocation.locationType',
    'HPaTaskChain.businessEntity',
    'HPaTaskChain.type',
    'ImplementedAuthMethod',
    'IntegrationTypes',
    'InvoiceApprovalStatus',
    'InvoiceCreationForm',
    'InvoiceLineStatus',
    'InvoiceLinesTypes',
    'InvoiceStatus',
    'IpAddressRegMethod',
    'isAggregator',
    'IsFree',
    'ItemPhysicalCondition',
    'ItemPolicy',
    'JobsApiJobTypes',
    'jobScheduleNames',
    'JobTitles',
    'LevelOfService',
    'LibraryNoticesOptInDisplay',
    'LicenseReviewStatuses',
    'LicenseStorageLocation',
    'LicenseTerms',
    'LicenseTermsAndTypes',
    'LinkingLevel',
    'LinkResolverPlugin',
    'marcLanguage',
    'Months',
    'MovingWallOperator',
    'NoteTypes',
    'OwnerHierarchy',
    'PartnerSystemTypes',
    'PaymentMethod',
    'PaymentStatus',
    'PhysicalMaterialType',
    'PhysicalReadingListCitationTypes',
    'POLineStatus',
    'PortfolioAccessType',
    'PPRSourceType',
    'PR_CitationType',
    'PR_RejectReasons',
    'PR_RequestedFormat',
    'PROCESSTYPE',
    'provenanceCodes',
    'PurchaseRequestStatus',
    'PurchaseType',
    'ReadingListCitationSecondaryTypes',
    'ReadingListCitationTypes',
    'ReadingListRLStatuses',
    'ReadingListStatuses',
    'ReadingListVisibilityStatuses',
    'RecurrenceType',
    'ReminderStatuses',
    'ReminderTypes',
    'RenewalCycle',
    'representationEntityType',
    'RepresentationUsageType',
    'RequestFormats',
    'RequestOptions',
    'ResourceSharingCopyrightsStatus',
    'ResourceSharingLanguages',
    'ResourceSharingRequestSendMethod',
    'SecondReportingCode',
    'ServiceType',
    'SetContentType',
    'SetPrivacy',
    'SetStatus',
    'SetType',
    'ShippingMethod',
    'Sub Systems',
    'SystemJobReportAlertMessage',
    'systemJobStatus',
    'TagTypes',
    'ThirdReportingCode',
    'UsageStatsDeliveryMethod',
    'UsageStatsFormat',
    'UsageStatsFrequency',
    'UserAddressTypes',
    'UserBlockDescription',
    'UserBlockTypes',
    'UserEmailTypes',
    'UserGroups',
    'UserIdentifierTypes',
    'UserPhoneTypes',
    'UserPreferredLanguage',
    'UserRoleStatus',
    'UserStatCategories',
    'UserStatisticalTypes',
    'UserUserType',
    'UserWebAddressTypes',
    'VATType',
    'VendorReferenceNumberType',
    'VendorSearchStatusFilter',
    'WebhookEvents',
    'WebhooksActionType',
    'WorkbenchPaymentMethod',
)


## result records ---------------------------------------------------


@dataclass(frozen=True)
class ScanIn:
    """
    One item from a scan-in run; `scanned_in` is False for dry runs.
    """

    member: Member
    item: Item
    scanned_in: bool


@dataclass(frozen=True)
class RequestCancellation:
    request: UserRequest
    matched: bool
    cancelled: bool


@dataclass(frozen=True)
class FieldChange:
    tag: str
    code: str
    before: str
    after: str


@dataclass(frozen=True)
class HoldingCleanup:
    """
    Before/after call numbers for one holding, and whether the change was written to Alma.
    """

    bib: Member
    holding_id: str
    link: str
    original: str
    cleaned: str
    changes: tuple[FieldChange, ...]
    updated: bool

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def _member_key(member: Member) -> str:
    return member.link or member.id


def _flatten(nested: OperationResult[list]) -> OperationResult:
    flat: OperationResult = OperationResult(errors=list(nested.errors))
    for chunk in nested.results:
        flat.results.extend(chunk)
    return flat


## items ------------------------------------------------------------


def scan_in_item(client: AlmaClient, scope: CancelScope, member: Member, circ_desk: str, library: str) -> ScanIn:
    """
    POSTs the scan operation on an item member.
    """
    params: dict[str, str] = {
        'op': 'scan',
        'register_in_house_use': 'false',
        'circ_desk': circ_desk,
        'library': library,
    }
    body: bytes = client.post(scope, member.link, params=params)
    return ScanIn(member, Item.from_xml(parse_xml(body, 'item', root_tag='item')), scanned_in=True)


def scan_in_items(
    client: AlmaClient,
    scope: CancelScope,
    members: list[Member],
    circ_desk: str,
    library: str,
    workers: int | None = None,
    progress: bool = True,
) -> OperationResult[ScanIn]:
    """
    Scans item members in. The members must be from a set with content ITEM.
    """
    return run_jobs(
        scope,
        members,
        lambda job_scope, member: scan_in_item(client, job_scope, member, circ_desk, library),
        'Scanning items in',
        key=_member_key,
        workers=workers,
        progress=progress,
    )


def fetch_item(client: AlmaClient, scope: CancelScope, member: Member) -> ScanIn:
    body: bytes = client.get(scope, member.link)
    return ScanIn(member, Item.from_xml(parse_xml(body, 'item', root_tag='item')), scanned_in=False)


def fetch_items(
    client: AlmaClient, scope: CancelScope, members: list[Member], workers: int | None = None, progress: bool = True
) -> OperationResult[ScanIn]:
    """
    Reads item members without changing them; used to report what a dry-run scan-in would touch.
    """
    return run_jobs(
        scope,
        members,
        lambda job_scope, member: fetch_item(client, job_scope, member),
        'Getting items',
        key=_member_key,
        workers=workers,
        progress=progress,
    )


def fetch_member_requests(client: AlmaClient, scope: CancelScope, member: Member) -> list[UserRequest]:
    body: bytes = client.get(scope, f'{member.link}/requests')
    root = parse_xml(body, 'user requests', root_tag='user_requests')
    return [UserRequest.from_xml(element, member) for element in root.iterfind('user_request')]


def fetch_item_requests(
    client: AlmaClient, scope: CancelScope, members: list[Member], workers: int | None = None, progress: bool = True
) -> OperationResult[UserRequest]:
    """
    Returns the open user requests on every item member. Read-only.
    """
    nested: OperationResult[list[UserRequest]] = run_jobs(
        scope,
        members,
        lambda job_scope, member: fetch_member_requests(client, job_scope, member),
        'Getting user requests',
        key=_member_key,
        workers=workers,
        progress=progress,
    )
    return _flatten(nested)


def cancel_request(client: AlmaClient, scope: CancelScope, request: UserRequest) -> UserRequest:
    if not request.member.link:
        raise ValueError(f'user request {request.id} has no associated member link')
    client.delete(scope, request.link)
    return request


def cancel_matching_requests(
    client: AlmaClient,
    scope: CancelScope,
    members: list[Member],
    request_type: str = '',
    sub_type: str = '',
    dry_run: bool = False,
    workers: int | None = None,
    progress: bool = True,
) -> OperationResult[RequestCancellation]:
    """
    Cancels the requests on item members whose type and sub type match (an empty filter matches anything).

    Returns one record per request seen, so requests that did not match are reported too.
    Nothing is deleted in a dry run.
    """
    found: OperationResult[UserRequest] = fetch_item_requests(client, scope, members, workers, progress)
    result: OperationResult[RequestCancellation] = OperationResult(errors=list(found.errors))
    matching: list[UserRequest] = [req for req in found.results if req.matches(request_type, sub_type)]
    log.info(f'{len(matching)} of {len(found.results)} requests match type {request_type!r} subtype {sub_type!r}.')
    cancelled_links: set[str] = set()
    if matching and not dry_run and found.fatal is None:
        cancelled: OperationResult[UserRequest] = run_jobs(
            scope,
            matching,
            lambda job_scope, request: cancel_request(client, job_scope, request),
            'Cancelling user requests',
            key=lambda request: request.link,
            workers=workers,
            progress=progress,
        )
        result.errors.extend(cancelled.errors)
        cancelled_links = {request.link for request in cancelled.results}
    matching_links: set[str] = {request.link for request in matching}
    for request in found.results:
        result.results.append(
            RequestCancellation(
                request, matched=request.link in matching_links, cancelled=request.link in cancelled_links
            )
        )
    return result


## holdings ---------------------------------------------------------


def fetch_holding_list_members(client: AlmaClient, scope: CancelScope, bib: Member) -> list[tuple[Member, HoldingListMember]]:
    body: bytes = client.get(scope, f'{bib.link}/holdings')
    root = parse_xml(body, 'holdings', root_tag='holdings')
    return [(bib, HoldingListMember.from_xml(element)) for element in root.iterfind('holding')]


def fetch_holding(client: AlmaClient, scope: CancelScope, listed: HoldingListMember) -> Holding:
    body: bytes = client.get(scope, listed.link)
    return Holding.from_xml(parse_xml(body, 'holding', root_tag='holding'), link=listed.link)


def update_holding(client: AlmaClient, scope: CancelScope, holding: Holding) -> Holding:
    """
    PUTs the holding back to the API and returns the record Alma stored.
    """
    body: bytes = client.put_xml(scope, holding.link, holding.to_xml())
    return Holding.from_xml(parse_xml(body, 'holding', root_tag='holding'), link=holding.link)


def clean_holding(holding: Holding) -> tuple[Holding, tuple[FieldChange, ...]]:
    """
    Returns a cleaned copy of the holding plus one FieldChange per call number subfield that changed.
    The original holding is left untouched.
    """
    cleaned: Holding = holding.copy()
    changes: list[FieldChange] = []
    for subfield in cleaned.subfields(CALL_NUMBER_TAG, CALL_NUMBER_CODES):
        before: str = subfield.text or ''
        after: str = clean_call_number(before)
        if after != before:
            subfield.text = after
            changes.append(FieldChange(CALL_NUMBER_TAG, subfield.get('code', ''), before, after))
    return cleaned, tuple(changes)


def clean_up_holdings_call_numbers(
    client: AlmaClient,
    scope: CancelScope,
    members: list[Member],
    dry_run: bool = False,
    workers: int | None = None,
    progress: bool = True,
) -> OperationResult[HoldingCleanup]:
    """
    Cleans up the 852 $h/$i call numbers in the holdings of bib members (set content BIB_MMS).

    Stages: list holdings per bib, fetch each full holding, clean locally, and (unless dry run)
    PUT back the holdings that changed. Every holding gets a HoldingCleanup, with its field
    changes, whether or not it was written.
    """
    listed: OperationResult[tuple[Member, HoldingListMember]] = _flatten(
        run_jobs(
            scope,
            members,
            lambda job_scope, bib: fetch_holding_list_members(client, job_scope, bib),
            'Getting holding list members',
            key=_member_key,
            workers=workers,
            progress=progress,
        )
    )
    result: OperationResult[HoldingCleanup] = OperationResult(errors=list(listed.errors))
    if listed.fatal is not None:
        return result
    bib_for_link: dict[str, Member] = {hlm.link: bib for bib, hlm in listed.results}
    holdings: OperationResult[Holding] = run_jobs(
        scope,
        [hlm for _bib, hlm in listed.results],
        lambda job_scope, hlm: fetch_holding(client, job_scope, hlm),
        'Getting holdings records',
        key=lambda hlm: hlm.link,
        workers=workers,
        progress=progress,
    )
    result.errors.extend(holdings.errors)
    if holdings.fatal is not None:
        return result

    cleaned_by_link: dict[str, tuple[Holding, tuple[FieldChange, ...]]] = {
        holding.link: clean_holding(holding) for holding in holdings.results
    }
    to_update: list[Holding] = [cleaned for cleaned, changes in cleaned_by_link.values() if changes]
    log.info(f'{len(to_update)} of {len(holdings.results)} holdings records have call numbers to clean up.')
    updated_links: set[str] = set()
    if to_update and not dry_run:
        updated: OperationResult[Holding] = run_jobs(
            scope,
            to_update,
            lambda job_scope, holding: update_holding(client, job_scope, holding),
            'Updating holdings records',
            key=lambda holding: holding.link,
            workers=workers,
            progress=progress,
        )
        result.errors.extend(updated.errors)
        updated_links = {holding.link for holding in updated.results}

    for holding in holdings.results:
        cleaned, changes = cleaned_by_link[holding.link]
        result.results.append(
            HoldingCleanup(
                bib=bib_for_link[holding.link],
                holding_id=holding.holding_id,
                link=holding.link,
                original=holding.call_number(),
                cleaned=cleaned.call_number(),
                changes=changes,
                updated=holding.link in updated_links,
            )
        )
    return result


## configuration ----------------------------------------------------


def fetch_code_table(client: AlmaClient, scope: CancelScope, name: str) -> CodeTable:
    body: bytes = client.get(scope, f'/almaws/v1/conf/code-tables/{quote(name)}')
    return CodeTable.from_xml(parse_xml(body, 'code table', root_tag='code_table'))


def fetch_code_tables(
    client: AlmaClient,
    scope: CancelScope,
    names: tuple[str, ...] = CODE_TABLE_NAMES,
    workers: int | None = None,
    progress: bool = True,
) -> OperationResult[CodeTable]:
    """
    Fetches every known code table concurrently; no set is involved.
    """
    return run_jobs(
        scope,
        names,
        lambda job_scope, name: fetch_code_table(client, job_scope, name),
        'Getting code tables',
        key=str,
        workers=workers,
        progress=progress,
    )


def fetch_libraries(client: AlmaClient, scope: CancelScope) -> list[Library]:
    body: bytes = client.get(scope, '/almaws/v1/conf/libraries')
    root = parse_xml(body, 'libraries', root_tag='libraries')
    return [Library.from_xml(element) for element in root.iterfind('library')]


def fetch_departments(client: AlmaClient, scope: CancelScope) -> list[Department]:
    body: bytes = client.get(scope, '/almaws/v1/conf/departments')
    root = parse_xml(body, 'departments', root_tag='departments')
    return [Department.from_xml(element) for element in root.iterfind('department')]
