"""
Signature field positions per signature layout

Coordinates are percentages of the page (0-100), origin top-left, which is
what the signing provider's field placement expects. Initials sit in the
running footer on pages 1..N-1; signature and date fields sit on the final
(signature) page.

Each layout is a set of signer blocks. The renderer draws every block at its
catalog position and the provider fields are derived from the same block
geometry, so a field always lands on the row drawn for it.

Letter page: 612 x 792 points. Margins: 0.5in top/sides, 1in bottom.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from errors import LayoutError
from models import FieldKind, Party, SignatureLayout

logger = logging.getLogger(__name__)

# Block row offsets, in percent of page height from the block top
LABEL_BASELINE = 1.5
SIGNATURE_HEIGHT = 5
DATE_HEIGHT = 2.5
DATE_LABEL_WIDTH = 6
DATE_WIDTH = 25
LINES_START = 12.5
LINE_SPACING = 2

# Nothing on the signature page is drawn below this (footer band starts at 90.9%)
CONTENT_BOTTOM = 90


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def bottom(self):
        return self.y + self.height


@dataclass(frozen=True)
class FieldPosition:
    page: int
    x: float
    y: float
    width: float
    height: float
    party: Party
    field_kind: FieldKind

    def to_dict(self):
        data = asdict(self)
        data['party'] = self.party.value
        data['field_kind'] = self.field_kind.value
        return data


@dataclass(frozen=True)
class SignatureBlock:
    """A signer's block on the signature page; party is None for the pre-signed company block"""
    key: str
    x: float
    top: float
    width: float
    party: Optional[Party] = None


@dataclass(frozen=True)
class BlockGeometry:
    label_baseline: float
    signature: Rect
    date: Rect
    date_baseline: float
    lines_baseline: float


def block_geometry(block, date_placement):
    """
    Row positions of a signature block

    'above' puts the date row between the label and the signature line,
    'below' puts it right under the signature line. The "Date:" label is
    drawn at the block's left edge and the date field starts after it.
    """
    date_width = min(DATE_WIDTH, block.width - DATE_LABEL_WIDTH)
    if date_placement == 'above':
        date_top = block.top + 2.5
        signature_top = date_top + DATE_HEIGHT + 0.5
    else:
        signature_top = block.top + 2.5
        date_top = signature_top + SIGNATURE_HEIGHT + 0.5
    return BlockGeometry(
        label_baseline=block.top + LABEL_BASELINE,
        signature=Rect(block.x, signature_top, block.width, SIGNATURE_HEIGHT),
        date=Rect(block.x + DATE_LABEL_WIDTH, date_top, date_width, DATE_HEIGHT),
        date_baseline=date_top + DATE_HEIGHT - 0.5,
        lines_baseline=block.top + LINES_START,
    )


@dataclass(frozen=True)
class LayoutSpec:
    name: str
    description: str
    initials: tuple      # ((party, Rect), ...) repeated on every non-final page
    blocks: tuple        # SignatureBlock, in signing order
    date_placement: str  # 'above' or 'below' the paired signature

    @property
    def signatures(self):
        """((party, Rect), ...) on the final page"""
        return tuple(
            (block.party, block_geometry(block, self.date_placement).signature)
            for block in self.blocks if block.party is not None
        )

    @property
    def dates(self):
        """((party, Rect), ...) on the final page"""
        return tuple(
            (block.party, block_geometry(block, self.date_placement).date)
            for block in self.blocks if block.party is not None
        )

    def block(self, key):
        return next((block for block in self.blocks if block.key == key), None)

    def block_bottom(self, block):
        """Lowest row a block may draw on before running into the block under it."""
        below = [other.top for other in self.blocks
                 if other.top > block.top and other.x < block.x + block.width and block.x < other.x + other.width]
        return min(below + [CONTENT_BOTTOM])


# Footer initials boxes; the renderer draws its footer boxes at the same spots
SELLER_INITIALS_RECT = Rect(13, 95, 8, 2.8)
BUYER_INITIALS_RECT = Rect(88, 95, 8, 2.8)

LAYOUTS = {
    SignatureLayout.TWO_COLUMN: LayoutSpec(
        name='Two Column (Standard)',
        description='Seller and buyer side by side. Buyer pre-signs, seller signs via the provider.',
        initials=((Party.SELLER, SELLER_INITIALS_RECT),),
        blocks=(
            SignatureBlock('seller', x=9, top=16, width=38, party=Party.SELLER),
            SignatureBlock('buyer', x=53, top=16, width=38),
        ),
        date_placement='above',
    ),
    SignatureLayout.SELLER_ONLY: LayoutSpec(
        name='Seller Only',
        description='Only the seller signs. The company has already pre-signed.',
        initials=((Party.SELLER, SELLER_INITIALS_RECT),),
        blocks=(
            SignatureBlock('seller', x=26, top=16, width=48, party=Party.SELLER),
        ),
        date_placement='above',
    ),
    SignatureLayout.BUYER_ONLY: LayoutSpec(
        name='Buyer Only',
        description='Only the buyer/assignee signs.',
        initials=((Party.BUYER, BUYER_INITIALS_RECT),),
        blocks=(
            SignatureBlock('assignor', x=9, top=16, width=42),
            SignatureBlock('buyer', x=9, top=38, width=42, party=Party.BUYER),
        ),
        date_placement='below',
    ),
    SignatureLayout.THREE_PARTY: LayoutSpec(
        name='Three Party Assignment',
        description='Seller signs first, assignor is pre-signed, assignee signs second.',
        initials=(
            (Party.SELLER, SELLER_INITIALS_RECT),
            (Party.BUYER, BUYER_INITIALS_RECT),
        ),
        blocks=(
            SignatureBlock('seller', x=9, top=16, width=42, party=Party.SELLER),
            SignatureBlock('assignor', x=9, top=38, width=42),
            SignatureBlock('buyer', x=9, top=60, width=42, party=Party.BUYER),
        ),
        date_placement='below',
    ),
    SignatureLayout.TWO_SELLER: LayoutSpec(
        name='Two Sellers',
        description='Two sellers sign in sequence on separate documents.',
        initials=(
            (Party.SELLER, SELLER_INITIALS_RECT),
            (Party.SECOND_SELLER, BUYER_INITIALS_RECT),
        ),
        blocks=(
            SignatureBlock('seller', x=9, top=16, width=42, party=Party.SELLER),
            SignatureBlock('buyer', x=9, top=38, width=42),
            SignatureBlock('second_seller', x=9, top=60, width=42, party=Party.SECOND_SELLER),
        ),
        date_placement='below',
    ),
}


def layout_spec(layout):
    return LAYOUTS[SignatureLayout.parse(layout, default=SignatureLayout.TWO_COLUMN)]


def second_party(layout):
    """The party that signs the second-stage document of a two-stage layout."""
    layout = SignatureLayout.parse(layout, default=SignatureLayout.TWO_COLUMN)
    if layout is SignatureLayout.TWO_SELLER:
        return Party.SECOND_SELLER
    return Party.BUYER


def provider_parties(layout):
    """Parties that sign through the provider, in signing order."""
    spec = layout_spec(layout)
    ordered = []
    for party, _ in spec.signatures:
        if party not in ordered:
            ordered.append(party)
    return ordered


def has_provider_right_initials(layout):
    return any(party is not Party.SELLER for party, _ in layout_spec(layout).initials)


def positions(layout, total_pages):
    """
    Compute every provider field for a document

    Args:
        layout: SignatureLayout (None means two-column)
        total_pages: page count of the rendered PDF

    Returns:
        list of FieldPosition

    Raises:
        LayoutError: a rectangle falls outside the page
    """
    total_pages = int(total_pages)
    if total_pages < 1:
        raise LayoutError(f"Cannot place signature fields on a {total_pages}-page document")

    layout = SignatureLayout.parse(layout, default=SignatureLayout.TWO_COLUMN)
    spec = LAYOUTS[layout]
    result = []

    for party, rect in spec.initials:
        for page in range(1, total_pages):
            result.append(_position(page, rect, party, FieldKind.INITIALS))

    for party, rect in spec.signatures:
        result.append(_position(total_pages, rect, party, FieldKind.SIGNATURE))

    for party, rect in spec.dates:
        result.append(_position(total_pages, rect, party, FieldKind.DATE))

    validate_positions(result, total_pages)
    logger.info(
        f"Signature fields: layout={layout.value} total_pages={total_pages} fields={len(result)}"
    )
    return result


def positions_for_parties(layout, total_pages, parties):
    parties = set(parties)
    return [p for p in positions(layout, total_pages) if p.party in parties]


def validate_positions(field_positions, total_pages):
    for position in field_positions:
        if not 1 <= position.page <= total_pages:
            raise LayoutError(
                f"Field on page {position.page} but document has {total_pages} pages",
                position=position.to_dict(),
            )
        if position.width <= 0 or position.height <= 0:
            raise LayoutError("Field has no area", position=position.to_dict())
        if position.x < 0 or position.y < 0 or position.x + position.width > 100 \
                or position.y + position.height > 100:
            raise LayoutError("Field falls outside the page", position=position.to_dict())


def _position(page, rect, party, field_kind):
    return FieldPosition(
        page=page,
        x=rect.x,
        y=rect.y,
        width=rect.width,
        height=rect.height,
        party=party,
        field_kind=field_kind,
    )
