"""The object grammar shared by the text and binary parsers.

Both variants of :py:class:`SceneParser` turn their payload into an :py:class:`ObjectReader`,
which presents it as a stream of ``Kind [Name] {`` openings, ``{ Name }`` references, closing
braces and data values. The sub-parsers here then walk that stream to build the scene model.

Parsing passes through the states in :py:class:`ParseState`. Header and template problems are
handled by the variant, object failures are handled here: in strict mode they abort the parse,
otherwise the object is abandoned and parsing resumes at the next top-level object.
"""
from __future__ import annotations
from typing import Callable, ClassVar, Dict, List, Optional, Set, Tuple
from typing_extensions import Final
from enum import Enum
import abc

import attrs

from xscene import postprocess
from xscene.errors import (
    Diagnostics, ErrorKind, HeaderInvalid, TruncatedInput, XFileError, XSyntaxError,
)
from xscene.logger import get_logger
from xscene.math import Matrix4, Quaternion, Vec2, Vec3
from xscene.model import (
    DEFAULT_TICKS_PER_SECOND, AnimationClip, Bone, Face, FileFormat, Header, Keyframe,
    Material, Mesh, SceneDocument, Vertex,
)
from xscene.sniffer import HEADER_SIZE, parse_header


__all__ = [
    'ParseState', 'ParseOptions', 'ParseContext', 'Template',
    'Item', 'ObjectHead', 'ObjectReader', 'SceneParser',
]
LOGGER = get_logger(__name__)

KEY_ROTATION: Final = 0
KEY_SCALE: Final = 1
KEY_POSITION: Final = 2
KEY_MATRIX: Final = 4
KEY_MATRIX_ALT: Final = 3
#: Number of values each key type requires.
KEY_VALUE_COUNTS: Final = {
    KEY_ROTATION: 4,
    KEY_SCALE: 3,
    KEY_POSITION: 3,
    KEY_MATRIX_ALT: 16,
    KEY_MATRIX: 16,
}


class ParseState(Enum):
    """The stages a parse goes through."""
    HEADER = 'header'
    TEMPLATE_DEFINITIONS = 'templates'
    DATA_OBJECTS = 'objects'
    FINISHED = 'finished'
    ERROR = 'error'


@attrs.define
class ParseOptions:
    """Configuration for loading a document."""
    #: If set, any failure inside an object aborts the whole parse.
    strict: bool = False
    #: Run the timing corrector over the animations once parsed.
    correct_timing: bool = True
    #: Run semantic validation, adding warnings for each problem.
    validate: bool = True
    #: The rate to use if the file does not specify ``AnimTicksPerSecond``.
    default_ticks_per_second: float = DEFAULT_TICKS_PER_SECOND
    #: Encoding used to decode text payloads and binary strings.
    encoding: str = 'latin-1'
    #: Included in error messages if set.
    filename: Optional[str] = None


@attrs.frozen
class Template:
    """A template declaration, describing the layout of an object kind."""
    name: str
    guid: str = ''
    members: Tuple[str, ...] = ()
    #: For restricted templates, the allowed child kinds. ``None`` if open, empty if closed.
    restrictions: Optional[Tuple[str, ...]] = ()


@attrs.define(eq=False)
class ParseContext:
    """State for a single parse. This is discarded once the document is built."""
    document: SceneDocument
    options: ParseOptions
    state: ParseState = ParseState.HEADER
    templates: Dict[str, Template] = attrs.Factory(dict)
    templates_by_guid: Dict[str, Template] = attrs.Factory(dict)
    named_materials: Dict[str, Material] = attrs.Factory(dict)
    #: Materials used by a mesh's material list.
    referenced_materials: Set[Material] = attrs.Factory(set)
    #: Frame name -> parent frame name (empty for roots).
    frame_parents: Dict[str, str] = attrs.Factory(dict)
    #: From ``AnimTicksPerSecond``, if present.
    ticks_per_second: Optional[float] = None

    @property
    def diagnostics(self) -> Diagnostics:
        return self.document.diagnostics

    @property
    def header(self) -> Header:
        return self.document.header

    def transition(self, state: ParseState) -> None:
        """Move to the next parse state."""
        LOGGER.debug('Parse state: {} -> {}', self.state.name, state.name)
        self.state = state

    def add_template(self, template: Template) -> None:
        """Register a template, by name and GUID."""
        self.templates[template.name] = template
        if template.guid:
            self.templates_by_guid[template.guid.upper()] = template


class Item(Enum):
    """The kinds of item an :py:class:`ObjectReader` produces."""
    OPEN = 'open'  #: ``Kind [Name] {``
    REFERENCE = 'ref'  #: ``{ Name }``
    CLOSE = 'close'  #: ``}``
    NUMBER = 'number'
    STRING = 'string'
    EOF = 'eof'


@attrs.frozen
class ObjectHead:
    """The opening of an object."""
    kind: str
    name: str = ''
    line: Optional[int] = None


class ObjectReader(abc.ABC):
    """Presents a payload as a stream of objects and values.

    Separators carry no meaning, the grammar relies on the declared counts instead.
    """
    #: Number of objects opened but not yet closed.
    depth: int = 0

    @property
    @abc.abstractmethod
    def line_num(self) -> Optional[int]:
        """The current line, if meaningful for this format."""
        raise NotImplementedError

    @abc.abstractmethod
    def peek(self) -> Item:
        """Determine the kind of the next item, without consuming it."""
        raise NotImplementedError

    @abc.abstractmethod
    def read_open(self) -> ObjectHead:
        """Consume the opening of an object."""
        raise NotImplementedError

    @abc.abstractmethod
    def read_reference(self) -> str:
        """Consume a reference, returning the referenced name."""
        raise NotImplementedError

    @abc.abstractmethod
    def read_close(self) -> None:
        """Consume the closing brace of an object."""
        raise NotImplementedError

    @abc.abstractmethod
    def read_number(self) -> float:
        """Consume a numeric value.

        :raises XSyntaxError: If the next item is not a number.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def read_string(self) -> str:
        """Consume a string value.

        :raises XSyntaxError: If the next item is not a string.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def skip_value(self) -> None:
        """Discard the next number or string."""
        raise NotImplementedError

    def error(self, message: str, *args: object) -> XSyntaxError:
        """Produce a syntax error for the current location."""
        if args:
            message = message.format(*args)
        return XSyntaxError(message, self.line_num)

    def read_int(self) -> int:
        """Consume a numeric value, which should be an integer."""
        return int(self.read_number())

    def read_floats(self, count: int) -> List[float]:
        """Consume the specified number of values."""
        return [self.read_number() for _ in range(count)]

    def read_vec3(self) -> Vec3:
        x, y, z = self.read_floats(3)
        return Vec3(x, y, z)

    def skip_object(self) -> None:
        """Skip the remaining contents of the current object, including its closing brace."""
        self.recover(self.depth - 1)

    def recover(self, depth: int) -> None:
        """Discard items until only ``depth`` objects remain open, or the data ends."""
        while self.depth > depth:
            item = self.peek()
            if item is Item.EOF:
                return
            elif item is Item.OPEN:
                self.read_open()
            elif item is Item.CLOSE:
                self.read_close()
            elif item is Item.REFERENCE:
                self.read_reference()
            else:
                self.skip_value()

    def children(self, kind: str) -> Optional[ObjectHead]:
        """Skip values until the next nested object or the end of this one.

        Returns the nested object's head, or ``None`` once the closing brace is consumed.
        References are skipped.
        """
        while True:
            item = self.peek()
            if item is Item.OPEN:
                return self.read_open()
            elif item is Item.CLOSE:
                self.read_close()
                return None
            elif item is Item.EOF:
                raise self.error('Unclosed {} block!', kind)
            elif item is Item.REFERENCE:
                self.read_reference()
            else:
                self.skip_value()


_ObjectParser = Callable[['SceneParser', ParseContext, ObjectReader, ObjectHead], None]


class SceneParser(abc.ABC):
    """Parses a DirectX file into a :py:class:`~xscene.model.SceneDocument`.

    Subclasses provide the template extraction and :py:class:`ObjectReader` for their grammar.
    """
    format: ClassVar[FileFormat]
    #: If false, ``SkinWeights`` data is reported as unsupported instead of parsed.
    supports_skin: ClassVar[bool] = True
    options: ParseOptions

    def __init__(self, options: Optional[ParseOptions] = None) -> None:
        self.options = options if options is not None else ParseOptions()

    def __repr__(self) -> str:
        return f'{type(self).__name__}({self.options!r})'

    def parse(self, data: bytes) -> SceneDocument:
        """Parse the complete file, including the header.

        This never raises for bad data, check :py:attr:`SceneDocument.success` and the
        diagnostics instead.
        """
        document = SceneDocument()
        ctx = ParseContext(document, self.options)
        try:
            document.header = parse_header(data, document.diagnostics)
        except HeaderInvalid as exc:
            exc.filename = self.options.filename
            document.diagnostics.record(exc)
            ctx.transition(ParseState.ERROR)
            return document
        body = data[HEADER_SIZE:]

        ctx.transition(ParseState.TEMPLATE_DEFINITIONS)
        self.read_templates(ctx, body)
        LOGGER.debug('{} templates declared', len(ctx.templates))

        ctx.transition(ParseState.DATA_OBJECTS)
        try:
            reader = self.open_reader(ctx, body)
        except XFileError as exc:
            document.diagnostics.record(exc)
            ctx.transition(ParseState.ERROR)
            return document
        if not self.parse_objects(ctx, reader):
            ctx.transition(ParseState.ERROR)
            return document

        postprocess.finalize(ctx)
        ctx.transition(ParseState.FINISHED)
        document.diagnostics.success = True
        return document

    @abc.abstractmethod
    def read_templates(self, ctx: ParseContext, body: bytes) -> None:
        """Extract template declarations. Failures here must only produce warnings."""
        raise NotImplementedError

    @abc.abstractmethod
    def open_reader(self, ctx: ParseContext, body: bytes) -> ObjectReader:
        """Produce the reader for the data objects."""
        raise NotImplementedError

    def parse_objects(self, ctx: ParseContext, reader: ObjectReader) -> bool:
        """Parse each top-level object. Returns False if the parse was aborted."""
        while True:
            try:
                item = reader.peek()
                if item is Item.EOF:
                    return True
                elif item is Item.OPEN:
                    head = reader.read_open()
                    parser = self._top_level.get(head.kind)
                    if parser is None:
                        LOGGER.debug('Skipping {} object "{}"', head.kind, head.name)
                        reader.skip_object()
                    else:
                        parser(self, ctx, reader, head)
                elif item is Item.CLOSE:
                    ctx.diagnostics.warning(ErrorKind.SYNTAX, 'Unmatched "}" at top level', reader.line_num)
                    reader.read_close()
                    reader.depth = 0
                elif item is Item.REFERENCE:
                    reader.read_reference()
                else:
                    reader.skip_value()
            except (XSyntaxError, TruncatedInput) as exc:
                exc.filename = self.options.filename
                ctx.diagnostics.record(exc, fatal=True)
                if self.options.strict:
                    return False
                try:
                    reader.recover(0)
                except (XSyntaxError, TruncatedInput) as exc:
                    exc.filename = self.options.filename
                    ctx.diagnostics.record(exc, fatal=True)
                    return False

    # Sub-parsers. Each is called after the object's opening has been consumed, and must consume
    # everything up to and including the closing brace.

    def parse_mesh(self, ctx: ParseContext, reader: ObjectReader, head: ObjectHead) -> None:
        """Parse a ``Mesh``, along with the blocks nested inside it."""
        mesh = Mesh(
            name=head.name,
            global_ticks_per_second=self.options.default_ticks_per_second,
        )
        vert_count = reader.read_int()
        for _ in range(vert_count):
            mesh.vertices.append(Vertex(reader.read_vec3()))

        face_count = reader.read_int()
        # The declared face index -> our face index, or None if it was discarded.
        face_slots: List[Optional[int]] = []
        for _ in range(face_count):
            corners = reader.read_int()
            indices = [reader.read_int() for _ in range(corners)]
            if corners == 3:
                face_slots.append(len(mesh.faces))
                mesh.faces.append(Face((indices[0], indices[1], indices[2])))
            else:
                face_slots.append(None)
        discarded = face_slots.count(None)
        if discarded:
            ctx.diagnostics.warning(
                ErrorKind.UNSUPPORTED,
                f'Mesh "{mesh.name}": ignored {discarded} faces which are not triangles',
                head.line,
            )

        overflowed: Set[int] = set()
        while (sub := reader.children('Mesh')) is not None:
            if sub.kind == 'MeshMaterialList':
                self.parse_material_list(ctx, reader, mesh, face_slots)
            elif sub.kind == 'MeshNormals':
                self.parse_normals(reader, mesh, face_slots)
            elif sub.kind == 'MeshTextureCoords':
                self.parse_texture_coords(reader, mesh)
            elif sub.kind == 'SkinWeights' and self.supports_skin:
                overflowed |= self.parse_skin_weights(ctx, reader, mesh)
            elif sub.kind in ('SkinWeights', 'XSkinMeshHeader') and not self.supports_skin:
                ctx.diagnostics.warning(
                    ErrorKind.UNSUPPORTED,
                    f'Mesh "{mesh.name}": {sub.kind} is not supported in {self.format.name.lower()} files',
                    sub.line,
                )
                reader.skip_object()
            else:
                reader.skip_object()

        for index in overflowed:
            mesh.vertices[index].normalize_weights()
        if overflowed:
            ctx.diagnostics.warning(
                ErrorKind.NOTICE,
                f'Mesh "{mesh.name}": {len(overflowed)} vertices had too many bone influences',
                head.line,
            )
        ctx.document.meshes.append(mesh)
        LOGGER.debug(
            'Mesh "{}": {} vertices, {} faces, {} materials, {} bones',
            mesh.name, mesh.vertex_count, mesh.face_count, mesh.material_count, mesh.bone_count,
        )

    def parse_material_list(
        self,
        ctx: ParseContext, reader: ObjectReader,
        mesh: Mesh, face_slots: List[Optional[int]],
    ) -> None:
        """Parse ``MeshMaterialList``, assigning materials to faces."""
        mat_count = reader.read_int()
        index_count = reader.read_int()
        indices = [reader.read_int() for _ in range(index_count)]
        if len(indices) == 1 and len(face_slots) > 1:
            # A single index applies to every face.
            indices *= len(face_slots)
        for slot, mat_index in zip(face_slots, indices):
            if slot is not None:
                mesh.faces[slot].material_index = mat_index

        while True:
            item = reader.peek()
            if item is Item.OPEN:
                sub = reader.read_open()
                if sub.kind != 'Material':
                    reader.skip_object()
                    continue
                material = self.read_material(reader, sub, len(mesh.materials))
                if material.name:
                    ctx.named_materials[material.name] = material
            elif item is Item.REFERENCE:
                name = reader.read_reference()
                try:
                    material = ctx.named_materials[name]
                except KeyError:
                    ctx.diagnostics.warning(ErrorKind.SEMANTIC, f'Unknown material "{name}"', reader.line_num)
                    material = Material(name=name)
            elif item is Item.CLOSE:
                reader.read_close()
                break
            elif item is Item.EOF:
                raise reader.error('Unclosed MeshMaterialList block!')
            else:
                reader.skip_value()
                continue
            mesh.materials.append(material)
            ctx.referenced_materials.add(material)

        if len(mesh.materials) != mat_count:
            ctx.diagnostics.warning(
                ErrorKind.SEMANTIC,
                f'Mesh "{mesh.name}" declared {mat_count} materials, but {len(mesh.materials)} were found',
                reader.line_num,
            )

    def parse_normals(self, reader: ObjectReader, mesh: Mesh, face_slots: List[Optional[int]]) -> None:
        """Parse ``MeshNormals``, assigning a normal to each vertex."""
        normals = [reader.read_vec3() for _ in range(reader.read_int())]
        face_count = reader.read_int()
        if face_count == 0 and len(normals) == len(mesh.vertices):
            for vert, normal in zip(mesh.vertices, normals):
                vert.normal = normal
        for i in range(face_count):
            corners = reader.read_int()
            normal_indices = [reader.read_int() for _ in range(corners)]
            slot = face_slots[i] if i < len(face_slots) else None
            if slot is None:
                continue
            for vert_index, normal_index in zip(mesh.faces[slot].indices, normal_indices):
                if 0 <= vert_index < len(mesh.vertices) and 0 <= normal_index < len(normals):
                    mesh.vertices[vert_index].normal = normals[normal_index]
        reader.skip_object()

    def parse_texture_coords(self, reader: ObjectReader, mesh: Mesh) -> None:
        """Parse ``MeshTextureCoords``, one UV per vertex."""
        count = reader.read_int()
        for i in range(count):
            u, v = reader.read_floats(2)
            if i < len(mesh.vertices):
                mesh.vertices[i].tex_coord = Vec2(u, v)
        reader.skip_object()

    def parse_skin_weights(self, ctx: ParseContext, reader: ObjectReader, mesh: Mesh) -> Set[int]:
        """Parse ``SkinWeights``, adding the bone and its vertex influences.

        Returns the vertices which had more influences than can be stored.
        """
        bone_name = reader.read_string()
        count = reader.read_int()
        vert_indices = [reader.read_int() for _ in range(count)]
        weights = reader.read_floats(count)
        offset = Matrix4.from_values(reader.read_floats(16))
        reader.skip_object()

        bone_index = mesh.find_bone(bone_name)
        if bone_index is None:
            bone_index = len(mesh.bones)
            mesh.bones.append(Bone(bone_name))
        bone = mesh.bones[bone_index]
        bone.offset_matrix = offset
        try:
            bone.bind_pose = offset.inverse()
        except ValueError:
            ctx.diagnostics.warning(
                ErrorKind.SEMANTIC, f'Bone "{bone_name}" has a singular offset matrix', reader.line_num,
            )

        overflowed: Set[int] = set()
        for vert_index, weight in zip(vert_indices, weights):
            if not 0 <= vert_index < len(mesh.vertices):
                ctx.diagnostics.warning(
                    ErrorKind.SEMANTIC,
                    f'Bone "{bone_name}" weights invalid vertex {vert_index}',
                    reader.line_num,
                )
            elif not mesh.vertices[vert_index].add_influence(bone_index, weight):
                overflowed.add(vert_index)
        return overflowed

    def parse_frame(self, ctx: ParseContext, reader: ObjectReader, head: ObjectHead) -> None:
        """Skip a ``Frame``, only recording the hierarchy of names.

        Nested frames are walked with an explicit stack, so deep hierarchies are fine.
        """
        if head.name:
            ctx.frame_parents[head.name] = ''
        # The open frames, and the name their children are parented to.
        stack: List[Tuple[ObjectHead, str]] = [(head, head.name)]
        while stack:
            frame, parent = stack[-1]
            sub = reader.children('Frame')
            if sub is None:
                stack.pop()
            elif sub.kind == 'Frame':
                if sub.name:
                    ctx.frame_parents[sub.name] = parent
                stack.append((sub, sub.name or parent))
            elif sub.kind == 'Mesh':
                ctx.diagnostics.warning(
                    ErrorKind.UNSUPPORTED,
                    f'Mesh "{sub.name}" inside frame "{frame.name}" skipped, frame hierarchies are not loaded',
                    sub.line,
                )
                reader.skip_object()
            else:
                reader.skip_object()

    def parse_animation_set(self, ctx: ParseContext, reader: ObjectReader, head: ObjectHead) -> None:
        """Parse an ``AnimationSet`` into a single clip."""
        clip = AnimationClip(
            name=f'Animation_{len(ctx.document.animations)}',
            source_name=head.name,
            ticks_per_second=self.options.default_ticks_per_second,
        )
        while (sub := reader.children('AnimationSet')) is not None:
            if sub.kind == 'Animation':
                self.parse_animation(ctx, reader, clip)
            else:
                reader.skip_object()

        if not clip.keyframes:
            ctx.diagnostics.warning(
                ErrorKind.NOTICE,
                f'AnimationSet "{head.name or clip.name}" has no keyframes, discarded',
                head.line,
            )
            return
        clip.sort_keyframes()
        ctx.document.animations.append(clip)
        LOGGER.debug(
            'Animation "{}": {} keyframes, duration {}',
            clip.name, len(clip.keyframes), clip.duration,
        )

    def parse_animation(self, ctx: ParseContext, reader: ObjectReader, clip: AnimationClip) -> None:
        """Parse an ``Animation``, the tracks for a single bone."""
        bone_name = ''
        keys: List[Keyframe] = []
        while True:
            item = reader.peek()
            if item is Item.REFERENCE:
                name = reader.read_reference()
                if not bone_name:
                    bone_name = name
            elif item is Item.OPEN:
                sub = reader.read_open()
                if sub.kind == 'AnimationKey':
                    keys += self.parse_animation_key(ctx, reader, sub, clip)
                else:
                    reader.skip_object()
            elif item is Item.CLOSE:
                reader.read_close()
                break
            elif item is Item.EOF:
                raise reader.error('Unclosed Animation block!')
            else:
                reader.skip_value()
        if bone_name and keys:
            clip.bone_keyframes.setdefault(bone_name, []).extend(keys)

    def parse_animation_key(
        self,
        ctx: ParseContext, reader: ObjectReader,
        head: ObjectHead, clip: AnimationClip,
    ) -> List[Keyframe]:
        """Parse an ``AnimationKey``, adding each key to the clip."""
        key_type = reader.read_int()
        key_count = reader.read_int()
        required = KEY_VALUE_COUNTS.get(key_type)
        if required is None:
            ctx.diagnostics.warning(ErrorKind.UNSUPPORTED, f'Unknown animation key type {key_type}', head.line)

        keys: List[Keyframe] = []
        for _ in range(key_count):
            time = reader.read_number()
            count = reader.read_int()
            values = reader.read_floats(count)
            key = Keyframe(time)
            if required is not None and count < required:
                raise reader.error(
                    'Animation key type {} requires {} values, got {}',
                    key_type, required, count,
                )
            if key_type == KEY_ROTATION:
                w, x, y, z = values[:4]
                key.rotation = Quaternion(x, y, z, w)
            elif key_type == KEY_SCALE:
                key.scale = Vec3.from_seq(values)
            elif key_type == KEY_POSITION:
                key.position = Vec3.from_seq(values)
            elif key_type in (KEY_MATRIX, KEY_MATRIX_ALT):
                key.position = Matrix4.from_values(values[:16]).translation
            keys.append(key)
            clip.keyframes.append(key)
            if time > clip.duration:
                clip.duration = time
        reader.skip_object()
        return keys

    def read_material(self, reader: ObjectReader, head: ObjectHead, index: int) -> Material:
        """Parse a ``Material`` block."""
        material = Material(name=head.name or f'Material_{index}')
        color = [reader.read_number() for _ in range(3)]
        alpha = reader.read_number() if reader.peek() is Item.NUMBER else 1.0
        material.diffuse_color = Vec3(*color)
        material.transparency = 1.0 - alpha
        if reader.peek() is Item.NUMBER:
            material.shininess = reader.read_number()
        if reader.peek() is Item.NUMBER:
            material.specular_color = reader.read_vec3()
        if reader.peek() is Item.NUMBER:
            material.emissive_color = reader.read_vec3()

        while (sub := reader.children('Material')) is not None:
            if sub.kind.casefold() == 'texturefilename' and reader.peek() is Item.STRING:
                path = reader.read_string()
                if not material.diffuse_texture:
                    material.diffuse_texture = path
            reader.skip_object()
        return material

    def parse_material(self, ctx: ParseContext, reader: ObjectReader, head: ObjectHead) -> None:
        """Parse a top-level ``Material``, which may be referenced by meshes."""
        material = self.read_material(reader, head, len(ctx.document.materials))
        if material.name:
            ctx.named_materials[material.name] = material
        ctx.document.materials.append(material)

    def parse_ticks_per_second(self, ctx: ParseContext, reader: ObjectReader, head: ObjectHead) -> None:
        """Parse ``AnimTicksPerSecond``, which sets the rate for every animation."""
        rate = reader.read_number()
        reader.skip_object()
        if rate > 0:
            ctx.ticks_per_second = rate
        else:
            ctx.diagnostics.warning(ErrorKind.SEMANTIC, f'Invalid AnimTicksPerSecond {rate}', head.line)

    _top_level: ClassVar[Dict[str, _ObjectParser]] = {
        'Mesh': parse_mesh,
        'Frame': parse_frame,
        'AnimationSet': parse_animation_set,
        'Material': parse_material,
        'AnimTicksPerSecond': parse_ticks_per_second,
    }
